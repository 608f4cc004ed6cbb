"""
backend/models/analysis.py

Code analysis request/response models.

Wire format uses camelCase (fileName, isClaudeGenerated, ...) to match the
dashboard and editor extension clients; Python attributes stay snake_case.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


ExplanationLevel = Literal["beginner", "intermediate", "advanced"]
DetectionMethod = Literal["timestamp", "pattern", "manual"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnalyzeRequest(_CamelModel):
    code: str
    language: str
    level: ExplanationLevel = "beginner"
    file_name: Optional[str] = None
    file_path: Optional[str] = None
    is_claude_generated: bool = False
    detection_method: DetectionMethod = "manual"

    @field_validator("code", "language")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Code and language are required")
        return value


class ExplanationResult(BaseModel):
    """Raw output of the explanation generator."""
    model_config = ConfigDict(frozen=True)

    content: str
    summary: str
    key_concepts: List[str] = []
    complexity_score: Optional[int] = None
    model: str
    generation_time_ms: int


class Explanation(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    level: ExplanationLevel
    content: str
    summary: Optional[str] = None
    key_concepts: List[str] = []
    complexity_score: Optional[int] = None
    ai_model: str
    generation_time_ms: int
    created_at: datetime


class CodeAnalysis(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    user_id: str
    code: str
    code_hash: str
    language: str
    file_name: Optional[str] = None
    file_path: Optional[str] = None
    is_claude_generated: bool = False
    detection_method: str = "manual"
    detected_at: Optional[datetime] = None
    created_at: datetime
    explanations: List[Explanation] = Field(default_factory=list)


class HistoryPage(_CamelModel):
    analyses: List[CodeAnalysis]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0
