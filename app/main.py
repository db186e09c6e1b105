import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core import config
from app.core.errors import (
    ChargeFailed,
    LedgerTransactionFailure,
    ManualReconciliationRequired,
    NotFoundError,
    RefundNotAllowed,
    StripeGatewayError,
)
from app.core.logging_config import setup_logging

# ✅ Import All API Routes
from app.api.routes import admin, billing, billing_webhook, credits, health

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.LOG_LEVEL)
    config.validate_settings()

    if config.RUN_MIGRATIONS:
        from app.db.migrate import run_migrations
        run_migrations()

    logger.info("TalentLedger API started")
    yield


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

app = FastAPI(title="TalentLedger API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_URL,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Authorization", "Content-Type"],
)


# ============================================
# ✅ ERROR MAPPING
# ============================================

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(RefundNotAllowed)
async def refund_not_allowed_handler(request: Request, exc: RefundNotAllowed):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": {"error": "refund_not_allowed", "message": str(exc)}},
    )


@app.exception_handler(ManualReconciliationRequired)
async def manual_reconciliation_handler(request: Request, exc: ManualReconciliationRequired):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": {
                "error": "manual_reconciliation_required",
                "message": str(exc),
                "paymentTransactionId": exc.payment_transaction_id,
                "requiredCredits": exc.required,
                "availableCredits": exc.available,
            }
        },
    )


@app.exception_handler(ChargeFailed)
async def charge_failed_handler(request: Request, exc: ChargeFailed):
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content={
            "detail": {
                "error": "charge_failed",
                "message": str(exc),
                "requiredCredits": exc.required,
                "availableCredits": exc.available,
            }
        },
    )


@app.exception_handler(StripeGatewayError)
async def stripe_gateway_handler(request: Request, exc: StripeGatewayError):
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": "Payment provider error"})


@app.exception_handler(LedgerTransactionFailure)
async def ledger_failure_handler(request: Request, exc: LedgerTransactionFailure):
    logger.error(f"Unhandled ledger failure on {request.url.path}: {exc.context}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Credit ledger unavailable, please retry"},
    )


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(health.router)
app.include_router(credits.router)
app.include_router(billing.router)
app.include_router(billing_webhook.router)
app.include_router(admin.router)


@app.get("/")
def root():
    return {"status": "TalentLedger API running"}
