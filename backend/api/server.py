# api/server.py
# ============================================================================
# SUBSCRIPTION & PAYMENT SERVICE — FASTAPI SERVER
# ============================================================================
# Upgrade / registration initiation, gateway webhook, status polling and the
# background reconciliation task.
# ============================================================================

import asyncio
import hmac
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from subscriptions import (
    AlreadyResolved,
    AuthenticationFailed,
    CallbackPayload,
    CallbackResult,
    DuplicateTrackingId,
    EntitlementChecker,
    ExpiredRegistration,
    GatewayError,
    GatewayUnavailable,
    IntaSendClient,
    LedgerWriteConflict,
    PaymentOrchestrator,
    SubscriptionError,
    SubscriptionLedger,
    UnknownTransaction,
    UnknownUser,
    ValidationError,
    configure_logging,
    get_tier_info,
    settings,
    utcnow,
)
from subscriptions.tiers import TIER_CATALOG
from tasks.reconciliation import get_reconciliation_stats, reconciliation_loop, run_reconcile_pass

logger = structlog.get_logger().bind(component="api")

VERSION = "1.0.0"

# Most specific first; the first isinstance match wins
ERROR_STATUS = [
    (UnknownUser, 404),
    (ValidationError, 400),
    (UnknownTransaction, 404),
    (AlreadyResolved, 409),
    (DuplicateTrackingId, 409),
    (ExpiredRegistration, 410),
    (AuthenticationFailed, 502),
    (GatewayUnavailable, 503),
    (GatewayError, 502),
    (LedgerWriteConflict, 503),
]


def status_for(error: SubscriptionError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


# ============================================================================
# WIRING
# ============================================================================

def build_orchestrator() -> PaymentOrchestrator:
    """Assemble the orchestrator for the configured storage backend."""
    gateway = IntaSendClient()
    if settings.STORE_BACKEND == "postgres":
        from database import (
            PostgresAuditLog,
            PostgresCallbackRetryQueue,
            PostgresLedgerRepository,
            PostgresTransactionStore,
        )
        return PaymentOrchestrator(
            gateway=gateway,
            store=PostgresTransactionStore(),
            ledger=SubscriptionLedger(PostgresLedgerRepository()),
            audit_log=PostgresAuditLog(),
            retry_queue=PostgresCallbackRetryQueue(),
        )
    return PaymentOrchestrator(gateway=gateway)


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class AccountRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None


class UpgradeRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    target_tier: str
    phone: Optional[str] = None


class RegistrationRequest(BaseModel):
    email: str
    phone: str
    target_tier: str
    full_name: Optional[str] = None


class CompleteRegistrationRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    store_backend: str


def create_app(
    orchestrator: Optional[PaymentOrchestrator] = None,
    start_reconciler: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app. Tests pass a pre-wired orchestrator and
    disable the background loop.
    """

    # ========================================================================
    # LIFESPAN MANAGEMENT
    # ========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("service_starting", version=VERSION, store_backend=settings.STORE_BACKEND)

        if app.state.orchestrator is None:
            if settings.STORE_BACKEND == "postgres":
                from database import init_database
                await init_database()
            app.state.orchestrator = build_orchestrator()

        task = None
        if start_reconciler:
            task = asyncio.create_task(reconciliation_loop(app.state.orchestrator))

        yield

        logger.info("service_stopping")
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await app.state.orchestrator.gateway.close()
        if settings.STORE_BACKEND == "postgres":
            from database import close_database
            await close_database()

    # ========================================================================
    # FASTAPI APP
    # ========================================================================

    app = FastAPI(
        title="Subscription & Payment Service",
        description="Mobile-money subscription upgrades with callback reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.started_at = utcnow()

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_orchestrator() -> PaymentOrchestrator:
        return app.state.orchestrator

    def get_entitlements() -> EntitlementChecker:
        orch = get_orchestrator()
        return EntitlementChecker(orch.ledger, clock=orch.clock)

    # ========================================================================
    # MIDDLEWARE / ERRORS
    # ========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(SubscriptionError)
    async def subscription_error_handler(request: Request, exc: SubscriptionError):
        status = status_for(exc)
        log = logger.error if status >= 500 else logger.warning
        log("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=status,
            content={"error": exc.code, "detail": exc.message, "tracking_id": exc.tracking_id},
        )

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        uptime = (utcnow() - app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            store_backend=settings.STORE_BACKEND,
        )

    @app.get("/api/v1/tiers")
    async def list_tiers():
        return [info.model_dump(mode="json") for info in TIER_CATALOG.values()]

    @app.post("/api/v1/accounts", status_code=201)
    async def create_account(request: AccountRequest):
        record = await get_orchestrator().ledger.create_account(
            request.user_id, email=request.email, phone=request.phone
        )
        return record.model_dump(mode="json")

    @app.post("/api/v1/subscriptions/upgrade", status_code=202)
    async def initiate_upgrade(request: UpgradeRequest):
        txn = await get_orchestrator().initiate_upgrade(
            request.user_id, request.target_tier, channel=request.phone
        )
        return {
            "tracking_id": txn.tracking_id,
            "state": txn.state.value,
            "amount": txn.amount,
            "currency": txn.currency,
            "expires_at": txn.expires_at.isoformat(),
        }

    @app.post("/api/v1/registrations")
    async def initiate_registration(request: RegistrationRequest):
        result = await get_orchestrator().initiate_registration(
            request.email, request.phone, request.target_tier, full_name=request.full_name
        )
        body = {"requires_payment": result.requires_payment, "message": result.message}
        if result.registration is not None:
            body["tracking_id"] = result.registration.tracking_id
            body["expires_at"] = result.registration.expires_at.isoformat()
            body["amount"] = get_tier_info(result.registration.target_tier).price
        return JSONResponse(status_code=202 if result.requires_payment else 200, content=body)

    @app.post("/api/v1/registrations/{tracking_id}/complete")
    async def complete_registration(tracking_id: str, request: CompleteRegistrationRequest):
        record = await get_orchestrator().complete_registration(tracking_id, request.user_id)
        return record.model_dump(mode="json")

    @app.post("/api/v1/payments/callback", response_model=CallbackResult)
    async def payment_callback(payload: CallbackPayload):
        """
        Gateway webhook. Anything but a 2xx makes the gateway redeliver, so
        only a SUCCESS callback that could not even be parked returns 503.
        """
        expected = settings.WEBHOOK_CHALLENGE
        if expected and not hmac.compare_digest(payload.challenge or "", expected):
            logger.warning("callback_challenge_mismatch", tracking_id=payload.tracking_id)
            raise HTTPException(status_code=401, detail="Invalid webhook challenge")

        try:
            return await get_orchestrator().handle_callback(payload)
        except Exception as e:
            logger.error("callback_not_durable", tracking_id=payload.tracking_id, error=str(e))
            raise HTTPException(status_code=503, detail="Callback could not be recorded; retry")

    @app.get("/api/v1/payments/{tracking_id}")
    async def get_payment(tracking_id: str):
        txn = await get_orchestrator().get_transaction(tracking_id)
        if txn is None:
            raise HTTPException(status_code=404, detail="Transaction not found")
        return txn.model_dump(mode="json", exclude={"callback_metadata", "channel"})

    @app.get("/api/v1/payments/{tracking_id}/audit")
    async def get_payment_audit(tracking_id: str):
        entries = await get_orchestrator().get_audit_trail(tracking_id)
        return [e.model_dump(mode="json") for e in entries]

    @app.get("/api/v1/subscriptions/{user_id}")
    async def get_subscription(user_id: str):
        details = await get_entitlements().get_subscription_details(user_id)
        body = details.model_dump(mode="json")
        body["features"] = get_tier_info(details.tier).features
        return body

    @app.post("/api/v1/subscriptions/{user_id}/cancel")
    async def cancel_subscription(user_id: str):
        record = await get_orchestrator().cancel_subscription(user_id)
        return record.model_dump(mode="json")

    @app.post("/api/v1/subscriptions/{user_id}/reactivate")
    async def reactivate_subscription(user_id: str):
        record = await get_orchestrator().reactivate_subscription(user_id)
        return record.model_dump(mode="json")

    @app.post("/api/v1/admin/reconcile")
    async def force_reconcile():
        report = await run_reconcile_pass(get_orchestrator())
        return report.model_dump()

    @app.get("/api/v1/admin/reconciliation")
    async def reconciliation_status():
        return await get_reconciliation_stats(get_orchestrator())

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV", "development") == "development",
        log_level="info"
    )
