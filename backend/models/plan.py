"""
backend/models/plan.py

Plan policy model.

A plan is a named tier (free, standard, professional, enterprise) that
governs feature access and usage quotas. Policies are static
configuration: loaded once at startup, never mutated by users.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


UNLIMITED = -1
ABSOLUTE_MAX_CODE_SIZE = 1_000_000  # characters; no plan may exceed this


class Feature(str, Enum):
    """Gated capabilities a request can ask for."""
    ANALYSES = "analyses"
    TESTS = "tests"
    EXERCISES = "exercises"
    PROJECTS = "projects"
    API = "api"


class PlanPolicy(BaseModel):
    """
    Limits and feature flags for one plan.

    Limits use -1 (UNLIMITED) as the "no ceiling" sentinel. The JSON field
    names (dailyAnalysesLimit, apiRequestsPerMonth, ...) are accepted as
    aliases so policy files can mirror the plan_limits table.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    plan_name: str = Field(alias="planName")
    daily_analyses_limit: int = Field(alias="dailyAnalysesLimit")
    api_requests_per_month: int = Field(alias="apiRequestsPerMonth")
    test_generation_enabled: bool = Field(default=False, alias="testGenerationEnabled")
    customization_exercises_enabled: bool = Field(default=False, alias="customizationExercisesEnabled")
    project_simulations_enabled: bool = Field(default=False, alias="projectSimulationsEnabled")
    api_access_enabled: bool = Field(default=False, alias="apiAccessEnabled")
    max_code_size: int = Field(default=ABSOLUTE_MAX_CODE_SIZE, alias="maxCodeSize")

    @field_validator("daily_analyses_limit", "api_requests_per_month")
    @classmethod
    def limit_or_sentinel(cls, value: int) -> int:
        if value < 0 and value != UNLIMITED:
            raise ValueError(f"limit must be >= 0 or {UNLIMITED} (unlimited)")
        return value

    @field_validator("max_code_size")
    @classmethod
    def code_size_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("maxCodeSize must be positive")
        return min(value, ABSOLUTE_MAX_CODE_SIZE)

    def limit_for(self, feature: Feature) -> Optional[int]:
        """Count limit for a metered feature, None for flag-only features."""
        if feature is Feature.ANALYSES:
            return self.daily_analyses_limit
        if feature is Feature.API:
            return self.api_requests_per_month
        return None

    def feature_enabled(self, feature: Feature) -> bool:
        if feature is Feature.TESTS:
            return self.test_generation_enabled
        if feature is Feature.EXERCISES:
            return self.customization_exercises_enabled
        if feature is Feature.PROJECTS:
            return self.project_simulations_enabled
        if feature is Feature.API:
            return self.api_access_enabled
        return True
