import logging
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ✅ Import All API Routes
from app.api.routes import billing, billing_webhook, health, usage, wallet

from app.core.config import LOG_LEVEL
from app.core.exceptions import ConfigurationError, ExhaustionError, GatewayError, ValidationError
from app.core.logging_config import setup_logging

setup_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

app = FastAPI(title="Resume Credits Billing")

# ✅ CORS LOCKDOWN — ONLY ALLOW YOUR FRONTEND
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",      # local frontend
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
)


# ============================================
# ✅ BILLING ERROR HANDLERS
# ============================================

@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "configuration_error", "message": "Billing is misconfigured"},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": exc.reason, "message": str(exc)},
    )


@app.exception_handler(ExhaustionError)
async def exhaustion_error_handler(request: Request, exc: ExhaustionError):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "entitlement_exhausted",
            "kind": exc.kind,
            "plan": exc.plan_id,
            "message": f"No {exc.kind} credits remaining. Buy an add-on or upgrade your plan.",
        },
    )


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    code = status.HTTP_502_BAD_GATEWAY if exc.retryable else status.HTTP_400_BAD_REQUEST
    return JSONResponse(
        status_code=code,
        content={"error": exc.reason, "message": str(exc), "retryable": exc.retryable},
    )


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(billing.router)
app.include_router(billing_webhook.router)
app.include_router(usage.router)
app.include_router(wallet.router)
app.include_router(health.router)


# ============================================
# ✅ HEALTH CHECK ROOT ENDPOINT
# ============================================

@app.get("/")
def root():
    return {"status": "Resume credits billing API running"}
