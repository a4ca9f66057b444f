"""
CleanCity - REST API

FastAPI application exposing the report lifecycle: submission,
assignment, field verification, approval and citizen scoring.

Run with: uvicorn cleancity.api.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from cleancity import __version__
from cleancity.api.dependencies import (
    Services, api_rate_limit, get_services, report_rate_limit
)
from cleancity.core.clock import utcnow
from cleancity.core.config import settings
from cleancity.core.errors import CleanCityError, InternalError, ValidationError
from cleancity.core.geo_utils import GeoLocation
from cleancity.core.logging import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if settings.is_development:
        services = app.dependency_overrides.get(get_services, get_services)()
        services.db.create_tables()
    yield


# FastAPI app
app = FastAPI(
    title="CleanCity",
    description="Waste report lifecycle and cleanup verification API",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Pydantic Models
# ============================================================================

class ReportCreateRequest(BaseModel):
    """Citizen waste report."""
    device_id: Optional[str] = None
    latitude: float
    longitude: float
    accuracy: float = 0.0
    photo_url: Optional[str] = None
    captured_at: datetime
    description: Optional[str] = None
    severity: Optional[str] = None
    waste_types: List[str] = Field(default_factory=list)
    zone: Optional[str] = None
    utc_offset_minutes: int = Field(default=0, ge=-840, le=840)


class ReportResponse(BaseModel):
    """Waste report."""
    id: str
    device_id: str
    latitude: float
    longitude: float
    location_accuracy: Optional[float]
    zone: Optional[str]
    photo_url: str
    description: Optional[str]
    severity: Optional[str]
    waste_types: List[str]
    status: str
    created_at: str
    assigned_at: Optional[str]
    in_progress_at: Optional[str]
    verified_at: Optional[str]
    resolved_at: Optional[str]
    assigned_worker_id: Optional[str]
    points_awarded: int


class AssignRequest(BaseModel):
    """Assign a report to a worker."""
    worker_id: str


class UnassignRequest(BaseModel):
    """Return a report to the open queue."""
    actor_id: Optional[str] = None


class StartTaskRequest(BaseModel):
    """Worker arrives on site with the before photo."""
    worker_id: str
    latitude: float
    longitude: float
    accuracy: float = 0.0
    before_photo_url: str


class StartTaskResponse(BaseModel):
    verification_id: str
    report_id: str
    status: str
    distance_meters: float


class CompleteTaskRequest(BaseModel):
    """Worker finishes with the after photo."""
    worker_id: str
    after_photo_url: str


class CompleteTaskResponse(BaseModel):
    verification_id: str
    report_id: str
    status: str
    time_spent_minutes: int


class VerificationResponse(BaseModel):
    """Field verification."""
    id: str
    report_id: str
    worker_id: str
    before_photo_url: str
    after_photo_url: Optional[str]
    started_at: str
    completed_at: Optional[str]
    time_spent_minutes: Optional[int]
    worker_latitude: float
    worker_longitude: float
    distance_meters: Optional[float]
    approval_status: str
    decided_by: Optional[str]
    decided_at: Optional[str]
    rejection_reason: Optional[str]


class ApproveRequest(BaseModel):
    admin_id: str


class RejectRequest(BaseModel):
    admin_id: str
    reason: Optional[str] = Field(default=None, max_length=500)


class ApprovalResponse(BaseModel):
    """Outcome of an approval decision."""
    verification_id: str
    report_id: str
    new_status: str
    approval_status: str
    points_awarded: int


class ApprovalStatsResponse(BaseModel):
    pending_count: int
    approved_today: int
    rejected_today: int
    avg_approval_hours: float


class CitizenStatsResponse(BaseModel):
    """Citizen points and badge progress."""
    device_id: str
    total_points: int
    reports_count: int
    current_badge: str
    next_badge: Optional[Dict[str, Any]]
    streak_days: int
    rank: int


class LeaderboardEntry(BaseModel):
    rank: int
    device_id: str
    points: int
    reports_count: int
    badge: str


class ReconcileResponse(BaseModel):
    checked: int
    credited: List[str]
    failed: List[str]


class HealthResponse(BaseModel):
    """API health check response."""
    status: str
    version: str
    timestamp: str
    modules: dict


# ============================================================================
# Error Handlers
# ============================================================================

def error_response(exc: CleanCityError) -> JSONResponse:
    headers = None
    if exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict()},
        headers=headers,
    )


@app.exception_handler(CleanCityError)
async def handle_cleancity_error(request: Request, exc: CleanCityError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part != "body"]
    field = location[-1] if location else None
    return error_response(ValidationError(first.get("msg", "Invalid request"), field=field))


@app.exception_handler(SQLAlchemyError)
async def handle_database_error(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return error_response(InternalError("Database error, please retry"))


# ============================================================================
# System Routes
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(services: Services = Depends(get_services)):
    """Check API health and backing stores."""
    database_ok = services.db.check_connection()
    store = services.rate_limiter.store
    cache_ok = store.ping() if hasattr(store, "ping") else True

    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=__version__,
        timestamp=utcnow().isoformat(),
        modules={
            "database": database_ok,
            "rate_limit_store": cache_ok,
        },
    )


api_router = APIRouter(prefix="/api/v1", dependencies=[Depends(api_rate_limit)])


# ============================================================================
# Report Routes
# ============================================================================

@api_router.post(
    "/reports",
    response_model=ReportResponse,
    status_code=201,
    tags=["Reports"],
    dependencies=[Depends(report_rate_limit)],
)
def create_report(request: ReportCreateRequest, services: Services = Depends(get_services)):
    """
    Submit a waste report.

    Subject to the daily cap, cooldown, photo freshness and duplicate
    suppression rules.
    """
    report = services.admission.submit_report(
        device_id=request.device_id,
        location=GeoLocation(request.latitude, request.longitude, request.accuracy),
        photo_url=request.photo_url,
        captured_at=request.captured_at,
        description=request.description,
        severity=request.severity,
        waste_types=request.waste_types,
        zone=request.zone,
        utc_offset_minutes=request.utc_offset_minutes,
    )
    return ReportResponse(**report.to_dict())


@api_router.get("/reports/{report_id}", response_model=ReportResponse, tags=["Reports"])
def get_report(report_id: str, services: Services = Depends(get_services)):
    """Get a report by ID."""
    return ReportResponse(**services.status.get_report(report_id).to_dict())


@api_router.post("/reports/{report_id}/assign", response_model=ReportResponse, tags=["Reports"])
def assign_report(report_id: str, request: AssignRequest, services: Services = Depends(get_services)):
    """Assign an open report to a worker."""
    report = services.status.assign(report_id, request.worker_id)
    return ReportResponse(**report.to_dict())


@api_router.post("/reports/{report_id}/unassign", response_model=ReportResponse, tags=["Reports"])
def unassign_report(report_id: str, request: UnassignRequest, services: Services = Depends(get_services)):
    """Return an assigned report to the open queue."""
    report = services.status.unassign(report_id, request.actor_id)
    return ReportResponse(**report.to_dict())


# ============================================================================
# Field Verification Routes
# ============================================================================

@api_router.post("/reports/{report_id}/start", response_model=StartTaskResponse, tags=["Verification"])
def start_task(report_id: str, request: StartTaskRequest, services: Services = Depends(get_services)):
    """Start cleanup with the before photo; the worker must be on site."""
    verification = services.verification.start_task(
        report_id=report_id,
        worker_id=request.worker_id,
        worker_location=GeoLocation(request.latitude, request.longitude, request.accuracy),
        before_photo_url=request.before_photo_url,
    )
    return StartTaskResponse(
        verification_id=verification.id,
        report_id=report_id,
        status="in_progress",
        distance_meters=verification.distance_meters,
    )


@api_router.post("/reports/{report_id}/complete", response_model=CompleteTaskResponse, tags=["Verification"])
def complete_task(report_id: str, request: CompleteTaskRequest, services: Services = Depends(get_services)):
    """Complete cleanup with the after photo."""
    verification = services.verification.complete_task(
        report_id=report_id,
        worker_id=request.worker_id,
        after_photo_url=request.after_photo_url,
    )
    return CompleteTaskResponse(
        verification_id=verification.id,
        report_id=report_id,
        status="verified",
        time_spent_minutes=verification.time_spent_minutes,
    )


@api_router.get(
    "/reports/{report_id}/verification",
    response_model=Optional[VerificationResponse],
    tags=["Verification"],
)
def get_report_verification(report_id: str, services: Services = Depends(get_services)):
    """Latest verification for a report, if any."""
    verification = services.verification.get_verification_for_report(report_id)
    return VerificationResponse(**verification.to_dict()) if verification else None


# ============================================================================
# Approval Routes
# ============================================================================

@api_router.get("/verifications/pending", tags=["Approval"])
def list_pending_verifications(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services)
):
    """Completed verifications awaiting review."""
    pending = services.approval.list_pending(limit=limit, offset=offset)
    return {"count": len(pending), "verifications": pending}


@api_router.get("/verifications/stats", response_model=ApprovalStatsResponse, tags=["Approval"])
def approval_stats(services: Services = Depends(get_services)):
    """Review queue statistics."""
    return ApprovalStatsResponse(**services.approval.stats())


@api_router.post(
    "/verifications/{verification_id}/approve",
    response_model=ApprovalResponse,
    tags=["Approval"],
)
def approve_verification(
    verification_id: str,
    request: ApproveRequest,
    services: Services = Depends(get_services)
):
    """Approve a verification; resolves the report and credits the citizen."""
    result = services.approval.approve(verification_id, request.admin_id)
    return ApprovalResponse(**result.to_dict())


@api_router.post(
    "/verifications/{verification_id}/reject",
    response_model=ApprovalResponse,
    tags=["Approval"],
)
def reject_verification(
    verification_id: str,
    request: RejectRequest,
    services: Services = Depends(get_services)
):
    """Reject a verification; the worker must redo the cleanup."""
    result = services.approval.reject(verification_id, request.admin_id, request.reason)
    return ApprovalResponse(**result.to_dict())


# ============================================================================
# Worker Routes
# ============================================================================

@api_router.get("/workers/{worker_id}/tasks", tags=["Workers"])
def worker_tasks(
    worker_id: str,
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    status: Optional[str] = None,
    services: Services = Depends(get_services)
):
    """Prioritized task list for a worker."""
    if (lat is None) != (lng is None):
        raise ValidationError(
            "lat and lng must be given together", field="lng" if lng is None else "lat"
        )
    location = GeoLocation(lat, lng) if lat is not None else None
    tasks = services.scheduler.list_worker_tasks(worker_id, location, status)
    return {"count": len(tasks), "tasks": [task.to_dict() for task in tasks]}


# ============================================================================
# Citizen Routes
# ============================================================================

@api_router.get("/citizens/{device_id}/stats", response_model=CitizenStatsResponse, tags=["Citizens"])
def citizen_stats(device_id: str, services: Services = Depends(get_services)):
    """Points, badge and rank for a device."""
    return CitizenStatsResponse(**services.ledger.get_stats(device_id))


@api_router.get("/leaderboard", response_model=List[LeaderboardEntry], tags=["Citizens"])
def leaderboard(
    limit: int = Query(10, ge=1, le=100),
    services: Services = Depends(get_services)
):
    """Top citizens by points."""
    return [LeaderboardEntry(**entry) for entry in services.ledger.leaderboard(limit)]


# ============================================================================
# Admin Routes
# ============================================================================

@api_router.post("/admin/points/reconcile", response_model=ReconcileResponse, tags=["Admin"])
def reconcile_points(
    limit: int = Query(100, ge=1, le=1000),
    services: Services = Depends(get_services)
):
    """Credit resolved reports whose points were never awarded."""
    return ReconcileResponse(**services.ledger.reconcile(limit))


app.include_router(api_router)


# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
