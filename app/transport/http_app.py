# app/transport/http_app.py
"""
HTTP application for the dispatch core.

Security layers:
1. Public links: bid, choose and tracking routes (token in the path, rate limited)
2. Participants: customer/vendor identity from the auth gateway headers
3. Admin: dispatch operations and mission control (admin bearer token)
4. No information leakage in production
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.dispatch.bidding import BidService
from app.core.dispatch.commission import CommissionPolicy
from app.core.dispatch.domain import Actor, TokenScope, utcnow
from app.core.dispatch.errors import DispatchError
from app.core.dispatch.events import ADMIN_INBOX, DispatchNotifier, customer_of, inbox_for
from app.core.dispatch.jobs import JobService
from app.core.dispatch.ops import OpsService
from app.core.dispatch.sla import SlaPolicy
from app.core.dispatch.tokens import TokenService
from app.core.dispatch.transitions import StatusTransitionEngine
from app.core.dispatch.watchers import SnapshotWatcher
from app.core.notifications.engine import NotificationEngine
from app.infra.db_async import close_pool, ensure_schema, init_pool
from app.infra.delivery_channels import get_delivery_channel
from app.infra.health_checks_async import build_health_checker
from app.infra.http_client import close_all_sessions
from app.infra.logging_config import get_logger, setup_logging
from app.infra.memory_stores import (
    InMemoryBidLedger,
    InMemoryJobStore,
    InMemoryNotificationStore,
    StaticComplianceSource,
    StaticRatingSource,
    StaticVendorDirectory,
)
from app.infra.metrics import get_metrics_collector, inc_counter
from app.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from app.transport.schemas import (
    AssignRequest,
    BidSubmitRequest,
    CompletionRequest,
    JobCreateRequest,
    OpenBiddingRequest,
    SelectBidRequest,
    StatusUpdateRequest,
    bid_view,
    dashboard_view,
    job_view,
    notification_view,
    tracking_view,
    vendor_preview_view,
)
from app.transport.security import (
    SecurityHeaders,
    check_configured_tokens,
    get_actor_or_admin,
    require_admin_auth,
    require_roles,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_job_service(request: Request) -> JobService:
    return request.app.state.jobs


def get_bid_service(request: Request) -> BidService:
    return request.app.state.bids


def get_ops_service(request: Request) -> OpsService:
    return request.app.state.ops


def get_notification_engine(request: Request) -> NotificationEngine:
    return request.app.state.notifications


def public_rate_limit(scope: str) -> Callable:
    """Rate limit dependency for a public link route"""

    async def check(request: Request) -> None:
        limiter = RateLimitDependency(request.app.state.rate_limiter, scope)
        await limiter(request)

    return check


participant = require_roles("customer", "vendor", "admin")
field_actor = require_roles("vendor", "admin")


# ============================================================================
# MIDDLEWARE FOR SECURITY HEADERS
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# WIRING
# ============================================================================

def build_services(
    state,
    *,
    vendors: Optional[StaticVendorDirectory] = None,
    ratings: Optional[StaticRatingSource] = None,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    """Create stores and services for the configured backend and put them on ``state``."""
    if settings.storage_backend == "postgres":
        from app.infra.pg_bid_ledger_async import AsyncPostgresBidLedger
        from app.infra.pg_job_store_async import AsyncPostgresJobStore
        from app.infra.pg_notification_store_async import AsyncPostgresNotificationStore

        job_store = AsyncPostgresJobStore()
        ledger = AsyncPostgresBidLedger()
        notification_store = AsyncPostgresNotificationStore()
    else:
        job_store = InMemoryJobStore()
        ledger = InMemoryBidLedger(job_store)
        notification_store = InMemoryNotificationStore()

    vendors = vendors if vendors is not None else StaticVendorDirectory()
    ratings = ratings if ratings is not None else StaticRatingSource()

    channel = get_delivery_channel()
    notifications = NotificationEngine(
        notification_store,
        channel,
        capacity=settings.notification_capacity,
        seen_keys_limit=settings.notification_seen_keys_limit,
        clock=clock,
    )
    notifier = DispatchNotifier(notifications)
    engine = StatusTransitionEngine(job_store, notifier, clock=clock)
    tokens = TokenService(job_store, engine, ttl_hours=settings.public_token_ttl_hours)
    watcher = SnapshotWatcher(notifications)

    state.vendors = vendors
    state.ratings = ratings
    state.channel = channel
    state.notifications = notifications
    state.watcher = watcher
    state.jobs = JobService(
        job_store,
        engine,
        tokens,
        vendors,
        notifier,
        commission_policy=CommissionPolicy.from_settings(),
    )
    state.bids = BidService(ledger, engine, tokens, vendors, notifier)
    state.ops = OpsService(
        job_store,
        ledger,
        vendors,
        engine,
        compliance=StaticComplianceSource(vendors),
        ratings=ratings,
        watcher=watcher,
        policy=SlaPolicy.from_settings(),
        scorecard_window_days=settings.scorecard_window_days,
        unbid_alert_minutes=settings.unbid_alert_minutes,
        routing_top_n=settings.routing_top_n,
    )
    state.rate_limiter = InMemoryRateLimiter(
        max_requests=settings.public_rate_limit_per_minute,
        window_seconds=60,
    )
    state.health = build_health_checker(channel, job_store)


def _make_lifespan(
    vendors: Optional[StaticVendorDirectory],
    ratings: Optional[StaticRatingSource],
    clock: Callable[[], datetime],
):
    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        """Application lifecycle: startup and shutdown"""

        # STARTUP
        logger.info(
            f"Starting application: env={settings.app_env}, storage={settings.storage_backend}"
        )

        if settings.is_production:
            missing = settings.validate_required_for_production()
            if missing:
                logger.critical(f"Missing required production settings: {missing}")
                raise RuntimeError(f"Missing production config: {missing}")

            if not settings.admin_token or len(settings.admin_token) < 32:
                logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
                raise RuntimeError("Weak ADMIN_TOKEN")

            if settings.log_level.upper() == "DEBUG":
                logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
                raise RuntimeError("LOG_LEVEL=DEBUG in production")

        check_configured_tokens()

        if settings.storage_backend == "postgres":
            await init_pool()
            await ensure_schema()

        build_services(fastapi_app.state, vendors=vendors, ratings=ratings, clock=clock)
        logger.info(f"Delivery channel: {fastapi_app.state.channel.name}")
        logger.info("Application startup complete")

        yield

        # SHUTDOWN
        logger.info("Shutting down application")
        await close_all_sessions()
        if settings.storage_backend == "postgres":
            await close_pool()
        logger.info("Application shutdown complete")

    return lifespan


# ============================================================================
# ROUTES
# ============================================================================

router = APIRouter()


@router.get("/health")
def health():
    """
    Basic health check - PUBLIC endpoint.
    Used by load balancers, monitoring, etc.
    """
    return {"status": "healthy"}


@router.get("/health/detailed", dependencies=[Depends(require_admin_auth)])
async def detailed_health(request: Request):
    return await request.app.state.health.run_checks(include_non_critical=True)


@router.get("/metrics", dependencies=[Depends(require_admin_auth)])
def metrics():
    """Operational counters and histograms"""
    return get_metrics_collector().get_metrics()


# --- Jobs -------------------------------------------------------------------

@router.post("/jobs", status_code=status.HTTP_201_CREATED)
async def create_job(
    payload: JobCreateRequest,
    actor: Actor = Depends(get_actor_or_admin),
    jobs: JobService = Depends(get_job_service),
):
    job = await jobs.create_job(
        pickup_address=payload.pickup_address,
        service_type=payload.service_type,
        urgency=payload.urgency,
        actor=actor,
        customer_phone=payload.customer_phone,
        pickup=payload.pickup.to_domain() if payload.pickup else None,
        dropoff_address=payload.dropoff_address,
        dropoff=payload.dropoff.to_domain() if payload.dropoff else None,
        notes=payload.notes,
        quoted_price=payload.quoted_price,
        bid_mode=payload.bid_mode,
        open_bidding=payload.open_bidding if actor.role == "admin" else None,
    )

    # The requester gets the links meant for them; vendor links go to vendors.
    scopes = [TokenScope.GUEST_TRACK, TokenScope.CUSTOMER_CHOOSE]
    if actor.role == "admin":
        scopes.append(TokenScope.VENDOR_BID)
    links = {scope.value: job.token_value(scope) for scope in scopes if job.token_value(scope)}

    return {"job": job_view(job, include_tokens=actor.role == "admin"), "links": links}


@router.get("/jobs")
async def list_jobs(
    status_filter: Optional[str] = None,
    actor: Actor = Depends(require_admin_auth),
    jobs: JobService = Depends(get_job_service),
):
    statuses = [s.strip() for s in status_filter.split(",") if s.strip()] if status_filter else None
    found = await jobs.list_jobs(statuses=statuses)
    return {"jobs": [job_view(job) for job in found], "count": len(found)}


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    actor: Actor = Depends(participant),
    jobs: JobService = Depends(get_job_service),
):
    job = await jobs.get_for(job_id, actor)
    return job_view(job, include_tokens=actor.role == "admin")


@router.post("/jobs/{job_id}/status")
async def update_status(
    job_id: str,
    payload: StatusUpdateRequest,
    actor: Actor = Depends(field_actor),
    jobs: JobService = Depends(get_job_service),
):
    job = await jobs.advance_status(
        job_id, payload.status, actor=actor, expected_version=payload.expected_version,
    )
    return job_view(job)


@router.post("/jobs/{job_id}/complete")
async def complete_job(
    job_id: str,
    payload: CompletionRequest,
    actor: Actor = Depends(field_actor),
    jobs: JobService = Depends(get_job_service),
):
    job = await jobs.report_completion(
        job_id,
        amount=payload.amount,
        method=payload.method,
        note=payload.note,
        actor=actor,
        expected_version=payload.expected_version,
    )
    return job_view(job)


@router.post("/jobs/{job_id}/open-bidding")
async def open_bidding(
    job_id: str,
    payload: Optional[OpenBiddingRequest] = None,
    actor: Actor = Depends(require_admin_auth),
    jobs: JobService = Depends(get_job_service),
):
    payload = payload or OpenBiddingRequest()
    job = await jobs.open_bidding(
        job_id, actor=actor, bid_mode=payload.bid_mode, quoted_price=payload.quoted_price,
    )
    return job_view(job, include_tokens=True)


@router.post("/jobs/{job_id}/assign")
async def assign_vendor(
    job_id: str,
    payload: AssignRequest,
    actor: Actor = Depends(require_admin_auth),
    jobs: JobService = Depends(get_job_service),
):
    job = await jobs.assign_vendor(
        job_id, payload.vendor_id, actor=actor, expected_version=payload.expected_version,
    )
    return job_view(job, include_tokens=True)


@router.post("/jobs/{job_id}/escalate")
async def escalate_job(
    job_id: str,
    actor: Actor = Depends(require_admin_auth),
    jobs: JobService = Depends(get_job_service),
):
    job = await jobs.escalate(job_id, actor=actor)
    return job_view(job, include_tokens=True)


@router.post("/jobs/{job_id}/tokens/{scope}/revoke")
async def revoke_token(
    job_id: str,
    scope: str,
    actor: Actor = Depends(require_admin_auth),
    jobs: JobService = Depends(get_job_service),
):
    job = await jobs.revoke_token(job_id, scope, actor=actor)
    return job_view(job, include_tokens=True)


# --- Bids -------------------------------------------------------------------

@router.get("/bids/job/{vendor_token}", dependencies=[Depends(public_rate_limit("vendor_preview"))])
async def vendor_preview(vendor_token: str, bids: BidService = Depends(get_bid_service)):
    job = await bids.vendor_preview(vendor_token)
    return vendor_preview_view(job)


@router.post("/bids/{vendor_token}", dependencies=[Depends(public_rate_limit("bid_submit"))])
async def submit_bid(
    vendor_token: str,
    payload: BidSubmitRequest,
    actor: Actor = Depends(get_actor_or_admin),
    bids: BidService = Depends(get_bid_service),
):
    bid = await bids.submit_bid(
        vendor_token,
        vendor_name=payload.vendor_name,
        vendor_phone=payload.vendor_phone,
        eta_minutes=payload.eta_minutes,
        price=payload.price,
        actor=actor if actor.role == "vendor" else None,
    )
    return bid_view(bid)


@router.get("/bids/list/{customer_token}", dependencies=[Depends(public_rate_limit("bid_list"))])
async def list_bids(
    customer_token: str,
    request: Request,
    bids: BidService = Depends(get_bid_service),
):
    job, found = await bids.list_bids(customer_token)

    customer = customer_of(job)
    if customer is not None:
        await request.app.state.watcher.observe_bids(customer, job, found)

    return {
        "job": tracking_view(job),
        "bid_mode": job.bid_mode,
        "quoted_price": job.quoted_price,
        "bidding_open": job.bidding_open and not job.selected_bid_id,
        "selected_bid_id": job.selected_bid_id,
        "bids": [bid_view(bid, selected_bid_id=job.selected_bid_id) for bid in found],
    }


@router.post("/bids/{bid_id}/select", dependencies=[Depends(public_rate_limit("bid_select"))])
async def select_bid(
    bid_id: str,
    payload: Optional[SelectBidRequest] = None,
    actor: Actor = Depends(get_actor_or_admin),
    bids: BidService = Depends(get_bid_service),
):
    payload = payload or SelectBidRequest()
    job = await bids.select_bid(bid_id, actor=actor, customer_token=payload.customer_token)
    return tracking_view(job) | {"selected_bid_id": job.selected_bid_id, "final_price": job.final_price}


@router.get("/track/{guest_token}", dependencies=[Depends(public_rate_limit("track"))])
async def track_job(guest_token: str, jobs: JobService = Depends(get_job_service)):
    job = await jobs.track(guest_token)
    return tracking_view(job)


# --- Mission control ----------------------------------------------------------

@router.get("/ops/dashboard")
async def ops_dashboard(
    actor: Actor = Depends(require_admin_auth),
    ops: OpsService = Depends(get_ops_service),
):
    dashboard = await ops.dashboard(recipient=ADMIN_INBOX)
    return dashboard_view(dashboard)


# --- Notifications -------------------------------------------------------------

@router.get("/notifications")
async def list_notifications(
    actor: Actor = Depends(participant),
    engine: NotificationEngine = Depends(get_notification_engine),
):
    recipient = inbox_for(actor)
    entries = await engine.list(recipient)
    return {
        "notifications": [notification_view(entry) for entry in entries],
        "unread": sum(1 for entry in entries if not entry.read),
    }


@router.post("/notifications/read-all")
async def read_all_notifications(
    actor: Actor = Depends(participant),
    engine: NotificationEngine = Depends(get_notification_engine),
):
    changed = await engine.mark_all_read(inbox_for(actor))
    return {"updated": changed}


@router.post("/notifications/clear")
async def clear_notifications(
    actor: Actor = Depends(participant),
    engine: NotificationEngine = Depends(get_notification_engine),
):
    await engine.clear_all(inbox_for(actor))
    return {"cleared": True}


@router.post("/notifications/{notification_id}/read")
async def read_notification(
    notification_id: str,
    actor: Actor = Depends(participant),
    engine: NotificationEngine = Depends(get_notification_engine),
):
    if not await engine.mark_read(inbox_for(actor), notification_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"updated": True}


# ============================================================================
# CREATE APP
# ============================================================================

def create_app(
    *,
    vendors: Optional[StaticVendorDirectory] = None,
    ratings: Optional[StaticRatingSource] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """
    Build the FastAPI app.

    ``vendors`` and ``ratings`` stand in for the vendor directory and the
    rating source; ``clock`` drives every timestamp and SLA computation.
    """
    fastapi_app = FastAPI(
        title="Roadside Dispatch",
        description="Job dispatch, bidding and mission control",
        version="1.0.0",
        lifespan=_make_lifespan(vendors, ratings, clock),
        # Security: Completely disable docs in production (None, not conditional URL)
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    # CORS - Restrictive in production
    if settings.is_production or settings.is_staging:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Authorization", "X-Actor-Role", "X-Actor-Id"],
        )
    else:
        # More permissive in dev
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    fastapi_app.add_middleware(SecurityHeadersMiddleware)

    fastapi_app.add_middleware(ErrorHandlingMiddleware)
    fastapi_app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    fastapi_app.add_middleware(RequestIDMiddleware)

    @fastapi_app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        """Domain rejections become structured JSON"""
        inc_counter("dispatch_rejections_total", code=exc.code)
        logger.info(
            f"Rejected {request.method} {request.url.path}: {exc.code}",
            extra={"status_code": exc.status_code},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "message": exc.detail},
        )

    @fastapi_app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with appropriate logging"""
        if exc.status_code >= 500:
            logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )

    fastapi_app.include_router(router)
    return fastapi_app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # request logging middleware covers prod
        server_header=False,
        date_header=False,
    )
