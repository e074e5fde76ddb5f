import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from carelink import config
from carelink.routers import admin, auth, bookings, emergency, notifications, payments, providers
from carelink.services.care_store import care_store
from carelink.services.notification_store import notification_store
from carelink.services.sms_sender import sms_sender

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="CareLink API", version="0.1.0")

cors_origins = config.parse_csv_env("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Error-Code"],
)

trusted_hosts = config.parse_csv_env("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)


@app.exception_handler(RequestValidationError)
async def request_validation_error(_request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors())},
        headers={"X-Error-Code": "VALIDATION_ERROR"},
    )


app.include_router(auth.router)
app.include_router(bookings.router)
app.include_router(providers.router)
app.include_router(payments.router)
app.include_router(emergency.router)
app.include_router(admin.router)
app.include_router(notifications.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    spatial_ready = bool(getattr(care_store.geo_index, "available", True))
    return {
        "status": "ready" if spatial_ready else "degraded",
        "spatial_index": spatial_ready,
        "sms_configured": sms_sender.enabled,
        "push_configured": notification_store.push_enabled,
        "payment_mode": config.PAYHERE_MODE,
    }
