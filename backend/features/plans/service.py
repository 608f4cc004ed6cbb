"""
backend/features/plans/service.py

Plan policy resolution.

Handles:
- Default plan limits (free, standard, professional, enterprise)
- Loading an alternate policy table from a JSON file
- Resolving a plan name to its immutable PlanPolicy
"""

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from backend.core.errors import ConfigurationError
from backend.core.logging import LOGGER_NAME
from backend.models.plan import PlanPolicy, UNLIMITED


logger = logging.getLogger(LOGGER_NAME)


# Default plan configurations (same field names as the plan_limits table)
DEFAULT_PLANS: Dict[str, Dict[str, Any]] = {
    "free": {
        "dailyAnalysesLimit": 5,
        "apiRequestsPerMonth": 0,
        "testGenerationEnabled": False,
        "customizationExercisesEnabled": False,
        "projectSimulationsEnabled": False,
        "apiAccessEnabled": False,
    },
    "standard": {
        "dailyAnalysesLimit": 30,
        "apiRequestsPerMonth": 1000,
        "testGenerationEnabled": True,
        "customizationExercisesEnabled": True,
        "projectSimulationsEnabled": False,
        "apiAccessEnabled": False,
    },
    "professional": {
        "dailyAnalysesLimit": 100,
        "apiRequestsPerMonth": 10000,
        "testGenerationEnabled": True,
        "customizationExercisesEnabled": True,
        "projectSimulationsEnabled": True,
        "apiAccessEnabled": True,
    },
    "enterprise": {
        "dailyAnalysesLimit": UNLIMITED,
        "apiRequestsPerMonth": UNLIMITED,
        "testGenerationEnabled": True,
        "customizationExercisesEnabled": True,
        "projectSimulationsEnabled": True,
        "apiAccessEnabled": True,
    },
}


def build_policies(raw: Mapping[str, Mapping[str, Any]]) -> Mapping[str, PlanPolicy]:
    """Validate raw plan configs into a read-only name -> PlanPolicy mapping."""
    if not raw:
        raise ConfigurationError("Plan policy table is empty")

    policies: Dict[str, PlanPolicy] = {}
    for plan_name, config in raw.items():
        if not isinstance(config, Mapping):
            raise ConfigurationError(f"Plan '{plan_name}' must be an object")
        try:
            policies[plan_name] = PlanPolicy.model_validate({**config, "planName": plan_name})
        except PydanticValidationError as exc:
            raise ConfigurationError(f"Invalid policy for plan '{plan_name}': {exc}") from exc
    return MappingProxyType(policies)


def load_plan_policies(path: Optional[str] = None) -> Mapping[str, PlanPolicy]:
    """
    Load the policy table once at startup.

    Args:
        path: Optional JSON file ({"<plan>": {"dailyAnalysesLimit": ..., ...}}).
              Defaults to DEFAULT_PLANS when omitted.

    Raises:
        ConfigurationError: unreadable file or invalid policy data
    """
    if not path:
        return build_policies(DEFAULT_PLANS)

    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot load plan policies from {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Plan policy file {path} must contain a JSON object")

    policies = build_policies(raw)
    logger.info(f"Loaded {len(policies)} plan policies from {path}")
    return policies


class PlanPolicyResolver:
    """Maps plan names to policies. Holds an injected read-only table."""

    def __init__(self, policies: Mapping[str, PlanPolicy]):
        self._policies = MappingProxyType(dict(policies))

    @property
    def plan_names(self) -> tuple:
        return tuple(self._policies)

    def resolve(self, plan_name: str) -> PlanPolicy:
        policy = self._policies.get(plan_name)
        if policy is None:
            logger.error(f"Plan policy not found: {plan_name!r}")
            raise ConfigurationError(f"Unknown plan: {plan_name!r}")
        return policy
