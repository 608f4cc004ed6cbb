"""
Explanation generator (Anthropic Messages API).

The output budget scales with the size and branching of the submitted
code; the Markdown answer is reduced to plain text, a one-line summary,
headline concepts, and a 1-10 complexity estimate.
"""

import logging
import re
import time
from typing import List, Optional, Protocol

import anthropic

from backend.core.errors import UpstreamServiceError
from backend.core.logging import LOGGER_NAME
from backend.features.analysis.prompts import FALLBACK_CONCEPTS, build_prompt
from backend.models.analysis import ExplanationResult

logger = logging.getLogger(LOGGER_NAME)

# (max non-blank lines, max complexity) -> output tokens; first match wins
TOKEN_TIERS = [
    (5, 1, 1000),
    (15, 5, 2000),
    (40, 15, 4000),
    (80, 30, 8000),
    (150, 60, 16000),
    (300, 120, 24000),
]
MAX_TOKEN_TIER = 40000

_FUNCTION_RE = re.compile(r"function\s+\w+")
_CLASS_RE = re.compile(r"class\s+\w+")
_IF_RE = re.compile(r"\bif\s*\(")
_LOOP_RE = re.compile(r"\b(for|while)\s*\(")
_HEADING_RE = re.compile(r"^##\s+(.+)$", re.MULTILINE)


class ExplanationGenerator(Protocol):
    async def generate(self, code: str, language: str, level: str) -> ExplanationResult:
        ...


def max_tokens_for(code: str, ceiling: Optional[int] = None) -> int:
    lines = [line for line in code.split("\n") if line.strip()]
    complexity = (
        len(_FUNCTION_RE.findall(code)) * 3
        + len(_CLASS_RE.findall(code)) * 5
        + len(_IF_RE.findall(code))
        + len(_LOOP_RE.findall(code))
    )
    budget = MAX_TOKEN_TIER
    for max_lines, max_complexity, tokens in TOKEN_TIERS:
        if len(lines) <= max_lines and complexity <= max_complexity:
            budget = tokens
            break
    return min(budget, ceiling) if ceiling else budget


def strip_markdown(text: str) -> str:
    result = re.sub(r"```[a-zA-Z0-9_+-]*\n?", "", text)
    result = re.sub(r"`([^`]+)`", r"\1", result)
    result = re.sub(r"^#{1,6}\s+", "", result, flags=re.MULTILINE)
    result = re.sub(r"\*\*([^*]+)\*\*", r"\1", result)
    result = re.sub(r"__([^_]+)__", r"\1", result)
    result = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", result)
    result = re.sub(r"^[-*]{3,}\s*$", "", result, flags=re.MULTILINE)
    result = re.sub(r"^[-*]\s+", "", result, flags=re.MULTILINE)
    result = re.sub(r"^>\s+", "", result, flags=re.MULTILINE)
    return result


def parse_explanation(markdown: str, level: str) -> dict:
    plain = strip_markdown(markdown).strip()
    lines = [line for line in plain.split("\n") if line.strip()]
    summary = lines[0][:200] if lines else "Code explanation"

    concepts: List[str] = []
    for heading in _HEADING_RE.findall(markdown)[:5]:
        concept = re.sub(r"[*_#]", "", heading).strip()
        if concept:
            concepts.append(concept)

    return {
        "content": plain,
        "summary": summary,
        "key_concepts": concepts or list(FALLBACK_CONCEPTS[level]),
        "complexity_score": min(10, max(1, len(plain) // 1000 + len(concepts))),
    }


class AnthropicExplanationGenerator:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        max_tokens: Optional[int] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    async def generate(self, code: str, language: str, level: str) -> ExplanationResult:
        started = time.monotonic()
        max_tokens = max_tokens_for(code, self.max_tokens)
        logger.info(f"Code analysis: lines={len(code.splitlines())}, max_tokens={max_tokens}")

        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=0.7,
                messages=[{"role": "user", "content": build_prompt(code, language, level)}],
            )
        except anthropic.APIError as exc:
            logger.error(f"Anthropic API error: {exc}")
            raise UpstreamServiceError("Failed to generate explanation") from exc

        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Explanation generated: {language}, level: {level}, time: {elapsed_ms}ms")

        return ExplanationResult(
            model=self.model,
            generation_time_ms=elapsed_ms,
            **parse_explanation(text, level),
        )
