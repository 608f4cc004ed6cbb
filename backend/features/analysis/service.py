"""
backend/features/analysis/service.py

Code analysis orchestration.

Handles:
- Code size limits (per plan, bounded by an absolute maximum)
- Per-user cache by sha256 of the code, language and level
- Explanation generation, persistence, then usage recording

Usage is recorded only after the explanation has been generated and saved;
a failed generation or save never charges the user. Cached answers are free.
"""

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from backend.core.errors import NotFoundError, PayloadTooLargeError, ValidationError
from backend.core.logging import log_event
from backend.features.analysis.generator import ExplanationGenerator
from backend.features.analysis.repository import MAX_PAGE_LIMIT, AnalysisRepository, HistoryFilter
from backend.features.usage.service import UsageRecorder
from backend.models.analysis import AnalyzeRequest, CodeAnalysis, Explanation, HistoryPage
from backend.models.plan import ABSOLUTE_MAX_CODE_SIZE, Feature, PlanPolicy


def code_hash(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def validate_code_size(code: str, policy: PlanPolicy, user_id: Optional[str] = None) -> None:
    """
    Reject oversized submissions before any quota or AI work.

    Raises:
        PayloadTooLargeError 413: absolute or plan limit exceeded
    """
    size = len(code or "")
    if size > ABSOLUTE_MAX_CODE_SIZE:
        log_event(
            "warning",
            "analysis.code_too_large",
            user_id=user_id,
            extra={"size": size, "limit": ABSOLUTE_MAX_CODE_SIZE},
        )
        raise PayloadTooLargeError(
            f"Code size too large. Maximum allowed is {ABSOLUTE_MAX_CODE_SIZE // 1000}KB. "
            f"Your code is {size // 1000}KB."
        )
    if size > policy.max_code_size:
        log_event(
            "warning",
            "analysis.code_over_plan_limit",
            user_id=user_id,
            extra={"plan": policy.plan_name, "size": size, "limit": policy.max_code_size},
        )
        raise PayloadTooLargeError(
            f"Code size exceeds the limit ({policy.max_code_size // 1000}KB). Your code is {size // 1000}KB."
        )


@dataclass(frozen=True)
class AnalysisOutcome:
    analysis_id: str
    cached: bool
    explanation: Explanation


class AnalysisService:
    def __init__(self, repository: AnalysisRepository, generator: ExplanationGenerator, recorder: UsageRecorder):
        self._repository = repository
        self._generator = generator
        self._recorder = recorder

    async def analyze(self, user_id: str, payload: AnalyzeRequest, now: Optional[datetime] = None) -> AnalysisOutcome:
        digest = code_hash(payload.code)
        cached = await asyncio.to_thread(
            self._repository.find_cached, user_id, digest, payload.language, payload.level
        )
        if cached is not None:
            analysis_id, explanation = cached
            log_event("info", "analysis.cache_hit", user_id=user_id, extra={"analysis_id": analysis_id})
            return AnalysisOutcome(analysis_id=analysis_id, cached=True, explanation=explanation)

        result = await self._generator.generate(payload.code, payload.language, payload.level)
        analysis_id, explanation = await asyncio.to_thread(
            lambda: self._repository.save(
                user_id=user_id,
                code=payload.code,
                code_hash=digest,
                language=payload.language,
                level=payload.level,
                result=result,
                file_name=payload.file_name,
                file_path=payload.file_path,
                is_claude_generated=payload.is_claude_generated,
                detection_method=payload.detection_method,
            )
        )

        await self._recorder.record(user_id, Feature.ANALYSES, now)

        log_event(
            "info",
            "analysis.created",
            user_id=user_id,
            feature=Feature.ANALYSES.value,
            extra={
                "analysis_id": analysis_id,
                "language": payload.language,
                "level": payload.level,
                "generation_time_ms": result.generation_time_ms,
            },
        )
        return AnalysisOutcome(analysis_id=analysis_id, cached=False, explanation=explanation)

    async def history(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        filters: Optional[HistoryFilter] = None,
    ) -> HistoryPage:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive integers")
        limit = min(limit, MAX_PAGE_LIMIT)
        return await asyncio.to_thread(self._repository.history, user_id, page, limit, filters or HistoryFilter())

    async def get(self, user_id: str, analysis_id: str) -> CodeAnalysis:
        analysis = await asyncio.to_thread(self._repository.get, user_id, analysis_id)
        if analysis is None:
            raise NotFoundError("Analysis not found")
        return analysis

    async def delete(self, user_id: str, analysis_id: str) -> None:
        deleted = await asyncio.to_thread(self._repository.delete, user_id, analysis_id)
        if not deleted:
            raise NotFoundError("Analysis not found")
        log_event("info", "analysis.deleted", user_id=user_id, extra={"analysis_id": analysis_id})
