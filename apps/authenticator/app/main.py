import time
from typing import Callable, Optional

from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from homeport_shared import (
    ChallengeStore,
    NotifierBackend,
    PhoneRateLimiter,
    RedisRateLimiter,
    SlidingWindowLimiter,
    build_challenge_store,
    build_phone_rate_limiter,
    resolve_notifier,
)

from .auth import SessionSigner
from .config import settings
from .database import SessionLocal, engine
from .errors import AppError, app_error_handler, http_exception_handler, validation_exception_handler
from .metrics import REQ_DURATION, REQUESTS
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .otp_auth import OTPAuthenticator
from .routers import session as session_router
from .routers import whatsapp as whatsapp_router
from .tenants import TenantResolver


def create_app(
    *,
    limiter: Optional[PhoneRateLimiter] = None,
    store: Optional[ChallengeStore] = None,
    notifier: Optional[NotifierBackend] = None,
    session_factory: Optional[Callable] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    app = FastAPI(title="Tenant Authenticator API", version="0.1.0", docs_url="/docs")

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID + JSON request log
    app.add_middleware(RequestIDMiddleware)

    # Per-client rate limiting (per-phone OTP limits live in the authenticator)
    exempt = ["/health", "/metrics", "/docs", "/openapi.json"]
    if (settings.RATE_LIMIT_BACKEND or "").lower() == "redis":
        app.add_middleware(
            RedisRateLimiter,
            redis_url=settings.REDIS_URL,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            prefix=settings.RATE_LIMIT_REDIS_PREFIX,
            exempt_paths=exempt,
            timeout_secs=settings.OTP.redis_timeout_secs,
        )
    else:
        app.add_middleware(
            SlidingWindowLimiter,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            exempt_paths=exempt,
        )

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    signer = SessionSigner(settings.ACCESS_TOKEN_SECRET, settings.SESSION_EXPIRES_MINUTES)
    app.state.session_signer = signer
    app.state.otp_authenticator = OTPAuthenticator(
        limiter=limiter or build_phone_rate_limiter(settings.OTP, clock=clock),
        store=store or build_challenge_store(settings.OTP, clock=clock),
        resolver=TenantResolver(session_factory or SessionLocal),
        notifier=notifier or resolve_notifier(settings.NOTIFIER),
        signer=signer,
        ttl_secs=settings.OTP.ttl_secs,
    )

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return {"status": "ok", "env": settings.ENV}

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        # Prefer templated route if available to limit cardinality
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQUESTS.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(whatsapp_router.router)
    app.include_router(session_router.router)

    # Error handlers
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.APP_HOST, port=settings.APP_PORT)
