"""Code analysis API.

POST /api/analyze runs its guards in order: analyze rate limit (IP),
authentication, code size, then the daily analyses quota.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from backend.core.auth import get_current_user
from backend.core.errors import ValidationError
from backend.core.guards import enforce_quota, rate_limit
from backend.core.services import AppServices, get_services
from backend.features.analysis.repository import HistoryFilter
from backend.features.analysis.service import validate_code_size
from backend.models.analysis import AnalyzeRequest
from backend.models.plan import Feature
from backend.models.user import AuthenticatedUser

router = APIRouter(prefix="/api/analyze", tags=["analyze"])


def _parse_date(value: Optional[str], field: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO-8601 date") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@router.post("", dependencies=[Depends(rate_limit("analyze"))])
async def analyze_code(
    payload: AnalyzeRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    policy = services.resolver.resolve(user.plan)
    validate_code_size(payload.code, policy, user.id)

    now = services.now()
    await enforce_quota(services.enforcer, user, Feature.ANALYSES, now)

    outcome = await services.analysis.analyze(user.id, payload, now)
    body = {
        "success": True,
        "data": {
            "analysisId": outcome.analysis_id,
            "cached": outcome.cached,
            "explanation": outcome.explanation.model_dump(mode="json", by_alias=True),
        },
    }
    return JSONResponse(status_code=200 if outcome.cached else 201, content=body)


@router.get("/history", dependencies=[Depends(rate_limit("general"))])
async def analysis_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    language: Optional[str] = None,
    is_claude_generated: Optional[bool] = Query(None, alias="isClaudeGenerated"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    user: AuthenticatedUser = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    filters = HistoryFilter(
        language=language,
        is_claude_generated=is_claude_generated,
        start_date=_parse_date(start_date, "startDate"),
        end_date=_parse_date(end_date, "endDate"),
    )
    history = await services.analysis.history(user.id, page=page, limit=limit, filters=filters)
    return {
        "success": True,
        "data": {
            "analyses": [a.model_dump(mode="json", by_alias=True) for a in history.analyses],
            "pagination": {
                "page": history.page,
                "limit": history.limit,
                "total": history.total,
                "totalPages": history.total_pages,
            },
        },
    }


@router.get("/{analysis_id}", dependencies=[Depends(rate_limit("general"))])
async def get_analysis(
    analysis_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    analysis = await services.analysis.get(user.id, analysis_id)
    return {"success": True, "data": {"analysis": analysis.model_dump(mode="json", by_alias=True)}}


@router.delete("/{analysis_id}", dependencies=[Depends(rate_limit("general"))])
async def delete_analysis(
    analysis_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    await services.analysis.delete(user.id, analysis_id)
    return {"success": True, "message": "Analysis deleted successfully"}
