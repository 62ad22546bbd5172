"""
============================================================================
Budget Request Service - Budget Request API Endpoints
============================================================================

Input Constraints:
    - Gateway identity headers (X-User-Id, X-User-Role, X-User-Department)
      set after JWT verification upstream
    - JSON bodies in camelCase or snake_case (merged by the normalizer)
Side Effects:
    - Database writes through the lifecycle engine
    - Side-effect intents queued after each commit

ENDPOINTS:
    GET    /api/budget-requests                               - List
    GET    /api/budget-requests/{id}                          - Detail
    GET    /api/budget-requests/{id}/history                  - Approval history
    POST   /api/budget-requests                               - Create
    POST   /api/budget-requests/{id}/submit                   - Submit
    POST   /api/budget-requests/{id}/approve                  - Approve (Finance)
    POST   /api/budget-requests/{id}/reject                   - Reject (Finance)
    DELETE /api/budget-requests/{id}                          - Soft delete (DRAFT)
    GET    /api/budget-requests/analytics/departments/{dept}  - Department summary
    GET    /api/budget-requests/analytics/spending-trends     - Approved spend over time
    GET    /api/budget-requests/analytics/approval-metrics    - Approval metrics
    GET    /api/budget-requests/analytics/top-requesters      - Top requesters
    GET    /api/budget-requests/analytics/category-breakdown  - Category breakdown

Domain errors (BRQ-0xx) are mapped to HTTP status codes by the exception
handler registered in app.main.

============================================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import BaseModel

from app.auth.security import MissingIdentityError, actor_from_headers
from services.budget_request_models import ActorContext

logger = logging.getLogger(__name__)


# ============================================================================
# Router Configuration
# ============================================================================

router = APIRouter(prefix="/api/budget-requests", tags=["Budget Requests"])


# ============================================================================
# Response Models
# ============================================================================

class ApiResponse(BaseModel):
    """Standard success envelope."""
    success: bool = True
    data: Optional[Any] = None
    message: Optional[str] = None


# ============================================================================
# Dependencies
# ============================================================================

def get_actor(request: Request) -> ActorContext:
    """
    Caller identity from gateway headers.

    Raises:
        HTTPException: 401 when an identity header is missing
    """
    try:
        return actor_from_headers(request.headers)
    except MissingIdentityError as e:
        logger.warning(f"[BR-API] Missing identity header | header={e.header} | path={request.url.path}")
        raise HTTPException(
            status_code=401,
            detail={
                "error_code": "AUTH-001",
                "message": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )


def get_services(request: Request):
    return request.app.state.services


# ============================================================================
# Endpoints
# ============================================================================

@router.get("", response_model=ApiResponse, summary="List budget requests")
async def list_budget_requests(
    request: Request,
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    result = await services.lifecycle.list(dict(request.query_params), actor)
    return ApiResponse(data=result)


@router.get(
    "/analytics/departments/{department}",
    response_model=ApiResponse,
    summary="Department summary",
)
async def department_summary(
    department: str,
    fiscal_year: Optional[int] = None,
    fiscal_period: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    summary = await services.analytics.department_summary(
        department, actor, fiscal_year=fiscal_year, fiscal_period=fiscal_period
    )
    return ApiResponse(data=summary)


@router.get(
    "/analytics/spending-trends",
    response_model=ApiResponse,
    summary="Approved spend over time",
)
async def spending_trends(
    department: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    group_by: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    trends = await services.analytics.spending_trends(
        actor,
        department=department,
        start_date=start_date,
        end_date=end_date,
        group_by=group_by,
    )
    return ApiResponse(data=trends)


@router.get(
    "/analytics/approval-metrics",
    response_model=ApiResponse,
    summary="Approval counts, rates and timing",
)
async def approval_metrics(
    department: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    metrics = await services.analytics.approval_metrics(
        actor, department=department, start_date=start_date, end_date=end_date
    )
    return ApiResponse(data=metrics)


@router.get(
    "/analytics/top-requesters",
    response_model=ApiResponse,
    summary="Most active requesters",
)
async def top_requesters(
    department: Optional[str] = None,
    limit: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    ranking = await services.analytics.top_requesters(actor, department=department, limit=limit)
    return ApiResponse(data=ranking)


@router.get(
    "/analytics/category-breakdown",
    response_model=ApiResponse,
    summary="Approved spend per category",
)
async def category_breakdown(
    department: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    breakdown = await services.analytics.category_breakdown(actor, department=department)
    return ApiResponse(data=breakdown)


@router.get("/{request_id}", response_model=ApiResponse, summary="Get a budget request")
async def get_budget_request(
    request_id: int,
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    return ApiResponse(data=await services.lifecycle.get(request_id, actor))


@router.get("/{request_id}/history", response_model=ApiResponse, summary="Approval history")
async def get_budget_request_history(
    request_id: int,
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    return ApiResponse(data=await services.lifecycle.get_history(request_id, actor))


@router.post(
    "",
    response_model=ApiResponse,
    status_code=201,
    summary="Create a budget request",
)
async def create_budget_request(
    payload: Dict[str, Any] = Body(...),
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    created = await services.lifecycle.create(payload, actor)
    return ApiResponse(data=created, message="Budget request created")


@router.post("/{request_id}/submit", response_model=ApiResponse, summary="Submit for review")
async def submit_budget_request(
    request_id: int,
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    result = await services.lifecycle.submit(request_id, actor)
    return ApiResponse(data=result, message="Budget request submitted")


@router.post("/{request_id}/approve", response_model=ApiResponse, summary="Approve (Finance)")
async def approve_budget_request(
    request_id: int,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    result = await services.lifecycle.approve(request_id, payload, actor)
    return ApiResponse(data=result, message="Budget request approved")


@router.post("/{request_id}/reject", response_model=ApiResponse, summary="Reject (Finance)")
async def reject_budget_request(
    request_id: int,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    result = await services.lifecycle.reject(request_id, payload, actor)
    return ApiResponse(data=result, message="Budget request rejected")


@router.delete("/{request_id}", response_model=ApiResponse, summary="Delete a draft")
async def delete_budget_request(
    request_id: int,
    actor: ActorContext = Depends(get_actor),
    services=Depends(get_services),
) -> ApiResponse:
    result = await services.lifecycle.delete(request_id, actor)
    return ApiResponse(data=result, message="Budget request deleted")


__all__ = ["router", "ApiResponse", "get_actor", "get_services"]
