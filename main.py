# main.py
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from auth import router as auth_router
from config import Settings
from courses import router as courses_router
from db import Base, make_engine, make_session_factory
from idempotency import PAYMENT_EVENTS, REVOKED_TOKENS, USED_RESET_TOKENS, IdempotencyGuard, make_redis
from mailer import Mailer
from orchestrator import UnlockOrchestrator
from payments import StripeGateway, make_stripe_client
from payments import router as payments_router
from users import router as users_router

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    engine=None,
    redis_client=None,
    stripe_client=None,
    mailer: Mailer | None = None,
) -> FastAPI:
    """Build the application; clients not passed in are constructed from settings."""
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    engine = engine if engine is not None else make_engine(settings.DATABASE_URL, settings.DATABASE_POOL_TIMEOUT)
    session_factory = make_session_factory(engine)
    redis_client = redis_client if redis_client is not None else make_redis(
        settings.REDIS_URL, settings.REDIS_SOCKET_TIMEOUT
    )
    if stripe_client is None:
        stripe_client = make_stripe_client(settings.STRIPE_SECRET_KEY, settings.STRIPE_TIMEOUT_SECONDS)
    if mailer is None:
        mailer = Mailer(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            settings.SMTP_USER,
            settings.SMTP_PASSWORD,
            settings.SMTP_FROM,
            settings.SMTP_TIMEOUT,
        )

    gateway = StripeGateway(
        stripe_client,
        settings.STRIPE_WEBHOOK_SECRET,
        settings.CLIENT_URL,
        settings.STRIPE_CURRENCY,
        settings.STRIPE_SIGNATURE_TOLERANCE,
    )
    payment_events = IdempotencyGuard(redis_client, PAYMENT_EVENTS, settings.IDEMPOTENCY_TTL_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- База ---
        Base.metadata.create_all(bind=engine)
        logger.info("database ready")
        yield
        redis_client.close()
        engine.dispose()
        logger.info("shutdown complete")

    app = FastAPI(title="Course Platform API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.mailer = mailer
    app.state.revoked_tokens = IdempotencyGuard(redis_client, REVOKED_TOKENS, settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60)
    app.state.used_reset_tokens = IdempotencyGuard(
        redis_client, USED_RESET_TOKENS, settings.RESET_TOKEN_EXPIRE_MINUTES * 60
    )
    app.state.orchestrator = UnlockOrchestrator(gateway, payment_events, session_factory, mailer)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Статика ---
    upload_dir = Path(settings.UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/static/uploads", StaticFiles(directory=str(upload_dir)), name="uploads")

    # --- Роуты ---
    app.include_router(auth_router, tags=["auth"])
    app.include_router(users_router, tags=["users"])
    app.include_router(courses_router, tags=["courses"])
    app.include_router(payments_router, tags=["payments"])

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000)
