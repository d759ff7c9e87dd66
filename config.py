# config.py
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# --- Загружаем .env ---
load_dotenv()

BASE_DIR = Path(__file__).resolve().parent


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:
    DATABASE_URL: str = "sqlite:///./courses.db"
    DATABASE_POOL_TIMEOUT: int = 10
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT: int = 5

    SECRET_KEY: str = "dev"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 120
    RESET_TOKEN_EXPIRE_MINUTES: int = 60

    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "brl"
    STRIPE_TIMEOUT_SECONDS: int = 10
    STRIPE_SIGNATURE_TOLERANCE: int = 300
    CLIENT_URL: str = "http://localhost:3000"
    IDEMPOTENCY_TTL_SECONDS: int = 3600

    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_FROM: str = "noreply@localhost"
    SMTP_TIMEOUT: int = 10

    UPLOAD_DIR: str = str(BASE_DIR / "static" / "uploads")
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        origins = os.getenv("CORS_ORIGINS")
        return cls(
            DATABASE_URL=os.getenv("DATABASE_URL", defaults.DATABASE_URL),
            DATABASE_POOL_TIMEOUT=_env_int("DATABASE_POOL_TIMEOUT", defaults.DATABASE_POOL_TIMEOUT),
            REDIS_URL=os.getenv("REDIS_URL", defaults.REDIS_URL),
            REDIS_SOCKET_TIMEOUT=_env_int("REDIS_SOCKET_TIMEOUT", defaults.REDIS_SOCKET_TIMEOUT),
            SECRET_KEY=os.getenv("SECRET_KEY", defaults.SECRET_KEY),
            ACCESS_TOKEN_EXPIRE_MINUTES=_env_int("ACCESS_TOKEN_EXPIRE_MINUTES", defaults.ACCESS_TOKEN_EXPIRE_MINUTES),
            RESET_TOKEN_EXPIRE_MINUTES=_env_int("RESET_TOKEN_EXPIRE_MINUTES", defaults.RESET_TOKEN_EXPIRE_MINUTES),
            STRIPE_SECRET_KEY=os.getenv("STRIPE_SECRET_KEY") or None,
            STRIPE_WEBHOOK_SECRET=os.getenv("STRIPE_WEBHOOK_SECRET", defaults.STRIPE_WEBHOOK_SECRET),
            STRIPE_CURRENCY=os.getenv("STRIPE_CURRENCY", defaults.STRIPE_CURRENCY),
            STRIPE_TIMEOUT_SECONDS=_env_int("STRIPE_TIMEOUT_SECONDS", defaults.STRIPE_TIMEOUT_SECONDS),
            STRIPE_SIGNATURE_TOLERANCE=_env_int("STRIPE_SIGNATURE_TOLERANCE", defaults.STRIPE_SIGNATURE_TOLERANCE),
            CLIENT_URL=os.getenv("CLIENT_URL", defaults.CLIENT_URL),
            IDEMPOTENCY_TTL_SECONDS=_env_int("IDEMPOTENCY_TTL_SECONDS", defaults.IDEMPOTENCY_TTL_SECONDS),
            SMTP_HOST=os.getenv("SMTP_HOST") or None,
            SMTP_PORT=_env_int("SMTP_PORT", defaults.SMTP_PORT),
            SMTP_USER=os.getenv("SMTP_USER") or None,
            SMTP_PASSWORD=os.getenv("SMTP_PASSWORD") or None,
            SMTP_FROM=os.getenv("SMTP_FROM", defaults.SMTP_FROM),
            SMTP_TIMEOUT=_env_int("SMTP_TIMEOUT", defaults.SMTP_TIMEOUT),
            UPLOAD_DIR=os.getenv("UPLOAD_DIR", defaults.UPLOAD_DIR),
            LOG_LEVEL=os.getenv("LOG_LEVEL", defaults.LOG_LEVEL),
            CORS_ORIGINS=[o.strip() for o in origins.split(",")] if origins else defaults.CORS_ORIGINS,
        )
