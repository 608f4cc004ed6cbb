"""Prompt templates for code explanations, one per learner level."""

BASE_PROMPT = (
    "You explain source code to people learning to program. "
    "Write plain Markdown. Do not use emoji."
)

LEVEL_PROMPTS = {
    "beginner": (
        "The reader has never programmed before. Explain every term you use "
        "with an everyday analogy, walk through the code line by line, show "
        "what happens when it runs, and list common mistakes."
    ),
    "intermediate": (
        "The reader knows the basics. Cover the purpose and structure of the "
        "code, the main control flow, the patterns it uses, and what could be "
        "improved."
    ),
    "advanced": (
        "The reader is an experienced engineer. Analyse architecture and design "
        "patterns, performance, security concerns, maintainability, and "
        "alternative implementations."
    ),
}

FALLBACK_CONCEPTS = {
    "beginner": ["programming", "fundamentals"],
    "intermediate": ["programming", "applied patterns"],
    "advanced": ["programming", "architecture"],
}


def build_prompt(code: str, language: str, level: str) -> str:
    return (
        f"{BASE_PROMPT}\n\n{LEVEL_PROMPTS[level]}\n\n"
        f"Code:\n```{language}\n{code}\n```\n\n"
        "Respond with a Markdown explanation, not JSON."
    )
