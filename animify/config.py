"""
Runtime settings for the Animify backend, read once from the environment.

A local .env file is loaded first; variables already set in the process
environment win. Hosting quirks handled here:
- Render hands out postgres:// URLs, psycopg3 wants postgresql://
- PORT is assigned by the platform

Usage:
    from animify.config import config

    bucket = config.AWS_BUCKET_OUTPUT
    if config.PREVIEW_ENABLED:
        ...
"""

import os
from dataclasses import dataclass, field
from typing import Optional, List

from dotenv import load_dotenv

load_dotenv(override=False)


DEFAULT_TRANSFORM_PROMPT = (
    "Transform this photo into a hand-drawn Studio Ghibli style animation frame. "
    "Keep the composition, the people and their poses, but render everything with "
    "soft watercolor backgrounds, warm natural light and clean expressive line work."
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env(name: str, default: str = "") -> str:
    value = os.environ.get(name)
    return default if value is None else value.strip()


def _env_flag(name: str, default: bool = False) -> bool:
    value = _env(name).lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"[CONFIG] {name}={raw!r} is not an integer, using {default}")
        return default


def _env_csv(name: str) -> List[str]:
    return [part.strip() for part in _env(name).split(",") if part.strip()]


def _psycopg_url(url: str) -> str:
    """postgres:// (Heroku/Render style) -> postgresql://"""
    scheme, sep, rest = url.partition("://")
    if sep and scheme == "postgres":
        return f"postgresql://{rest}"
    return url


@dataclass
class Config:
    """All settings as attributes; derived values are properties."""

    # ─────────────────────────────────────────────────────────────
    # Environment
    # ─────────────────────────────────────────────────────────────
    FLASK_ENV: str = field(default_factory=lambda: _env("FLASK_ENV").lower())
    PORT: int = field(default_factory=lambda: _env_int("PORT", 5001))
    HOST: str = field(default_factory=lambda: _env("HOST", "0.0.0.0"))

    @property
    def IS_RENDER(self) -> bool:
        return bool(_env("RENDER"))

    @property
    def IS_DEV(self) -> bool:
        """Explicit FLASK_ENV decides; without one, anything off Render counts as local."""
        if self.FLASK_ENV:
            return self.FLASK_ENV in ("development", "dev", "local")
        return not self.IS_RENDER

    @property
    def IS_PROD(self) -> bool:
        return not self.IS_DEV

    # ─────────────────────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────────────────────
    RAW_DATABASE_URL: str = field(default_factory=lambda: _env("DATABASE_URL"))
    APP_SCHEMA: str = field(default_factory=lambda: _env("APP_SCHEMA", "animify"))
    DB_CONNECT_TIMEOUT: int = field(default_factory=lambda: _env_int("DB_CONNECT_TIMEOUT", 5))

    @property
    def DATABASE_URL(self) -> str:
        return _psycopg_url(self.RAW_DATABASE_URL)

    @property
    def HAS_DATABASE(self) -> bool:
        return bool(self.RAW_DATABASE_URL)

    # ─────────────────────────────────────────────────────────────
    # Sessions and sign-in
    # ─────────────────────────────────────────────────────────────
    SESSION_COOKIE_NAME: str = "animify_sid"
    SESSION_COOKIE_PATH: str = "/"
    SESSION_COOKIE_HTTPONLY: bool = True
    COOKIE_DOMAIN_SETTING: str = field(default_factory=lambda: _env("SESSION_COOKIE_DOMAIN"))
    # Cookie max-age and DB expires_at both derive from this
    SESSION_TTL_DAYS: int = field(default_factory=lambda: _env_int("SESSION_TTL_DAYS", 30))

    @property
    def SESSION_COOKIE_DOMAIN(self) -> Optional[str]:
        """Shared parent domain (".example.com"), or None for a host-only cookie."""
        return self.COOKIE_DOMAIN_SETTING or None

    @property
    def SESSION_COOKIE_SECURE(self) -> bool:
        return self.IS_PROD

    @property
    def SESSION_COOKIE_SAMESITE(self) -> str:
        # The frontend calls the API cross-site in production
        return "None" if self.IS_PROD else "Lax"

    @property
    def SESSION_TTL_SECONDS(self) -> int:
        return self.SESSION_TTL_DAYS * 86400

    AUTH_PROVIDER_URL: str = field(default_factory=lambda: _env("AUTH_PROVIDER_URL").rstrip("/"))
    AUTH_PROVIDER_API_KEY: str = field(default_factory=lambda: _env("AUTH_PROVIDER_API_KEY"))
    AUTH_PROVIDER_TIMEOUT: int = field(default_factory=lambda: _env_int("AUTH_PROVIDER_TIMEOUT", 10))

    @property
    def AUTH_PROVIDER_CONFIGURED(self) -> bool:
        return bool(self.AUTH_PROVIDER_URL and self.AUTH_PROVIDER_API_KEY)

    # ─────────────────────────────────────────────────────────────
    # Payments
    # ─────────────────────────────────────────────────────────────
    STRIPE_SECRET_KEY: str = field(default_factory=lambda: _env("STRIPE_SECRET_KEY"))
    STRIPE_PUBLISHABLE_KEY: str = field(default_factory=lambda: _env("STRIPE_PUBLISHABLE_KEY"))
    STRIPE_WEBHOOK_SECRET: str = field(default_factory=lambda: _env("STRIPE_WEBHOOK_SECRET"))
    # One Price object for one unlocked image; its amount is re-read on every call
    STRIPE_PRICE_ID: str = field(default_factory=lambda: _env("STRIPE_PRICE_ID"))
    PRODUCT_TYPE: str = field(default_factory=lambda: _env("PRODUCT_TYPE", "animation_image"))

    @property
    def STRIPE_CONFIGURED(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY and self.STRIPE_PRICE_ID)

    @property
    def STRIPE_MODE(self) -> str:
        return "live" if self.STRIPE_SECRET_KEY.startswith(("sk_live_", "rk_live_")) else "test"

    # ─────────────────────────────────────────────────────────────
    # Object storage
    # ─────────────────────────────────────────────────────────────
    AWS_REGION: str = field(default_factory=lambda: _env("AWS_REGION", "eu-west-2"))
    AWS_ACCESS_KEY_ID: str = field(default_factory=lambda: _env("AWS_ACCESS_KEY_ID"))
    AWS_SECRET_ACCESS_KEY: str = field(default_factory=lambda: _env("AWS_SECRET_ACCESS_KEY"))
    # S3-compatible endpoint (MinIO, R2, Supabase storage); empty means AWS
    AWS_ENDPOINT_URL: str = field(default_factory=lambda: _env("AWS_ENDPOINT_URL"))
    AWS_BUCKET_INPUT: str = field(default_factory=lambda: _env("AWS_BUCKET_INPUT", "animify-input"))
    AWS_BUCKET_OUTPUT: str = field(default_factory=lambda: _env("AWS_BUCKET_OUTPUT", "animify-output"))
    AWS_BUCKET_PREVIEW: str = field(default_factory=lambda: _env("AWS_BUCKET_PREVIEW", "animify-preview"))
    PRESIGN_EXPIRY_SECONDS: int = field(default_factory=lambda: _env_int("PRESIGN_EXPIRY_SECONDS", 3600))

    @property
    def AWS_CONFIGURED(self) -> bool:
        return bool(self.AWS_ACCESS_KEY_ID and self.AWS_SECRET_ACCESS_KEY)

    # ─────────────────────────────────────────────────────────────
    # Image pipeline
    # ─────────────────────────────────────────────────────────────
    OPENAI_API_KEY: str = field(default_factory=lambda: _env("OPENAI_API_KEY"))
    OPENAI_API_BASE: str = field(default_factory=lambda: _env("OPENAI_API_BASE", "https://api.openai.com/v1").rstrip("/"))
    OPENAI_IMAGE_MODEL: str = field(default_factory=lambda: _env("OPENAI_IMAGE_MODEL", "gpt-image-1"))
    TRANSFORM_PROMPT: str = field(default_factory=lambda: _env("TRANSFORM_PROMPT", DEFAULT_TRANSFORM_PROMPT))

    PREVIEW_ENABLED: bool = field(default_factory=lambda: _env_flag("PREVIEW_ENABLED", True))
    PREVIEW_MAX_DIMENSION: int = field(default_factory=lambda: _env_int("PREVIEW_MAX_DIMENSION", 768))
    # A processing claim older than this may be taken over by a new attempt
    PROCESSING_STALE_SECONDS: int = field(default_factory=lambda: _env_int("PROCESSING_STALE_SECONDS", 900))
    MAX_UPLOAD_MB: int = field(default_factory=lambda: _env_int("MAX_UPLOAD_MB", 10))
    COOKIE_MIGRATION_MAX_BATCH: int = field(default_factory=lambda: _env_int("COOKIE_MIGRATION_MAX_BATCH", 100))

    @property
    def MAX_UPLOAD_BYTES(self) -> int:
        return self.MAX_UPLOAD_MB * 1024 * 1024

    @property
    def OPENAI_CONFIGURED(self) -> bool:
        return bool(self.OPENAI_API_KEY)

    # ─────────────────────────────────────────────────────────────
    # CORS
    # ─────────────────────────────────────────────────────────────
    ORIGINS_SETTING: str = field(default_factory=lambda: _env("ALLOWED_ORIGINS"))

    @property
    def ALLOW_ALL_ORIGINS(self) -> bool:
        return self.ORIGINS_SETTING == "*"

    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        """
        Origins allowed to call the API with credentials.

        Without ALLOWED_ORIGINS, local dev servers are allowed in development
        and nothing in production. Entries without an http(s) scheme are
        dropped, trailing slashes are stripped.
        """
        if self.ALLOW_ALL_ORIGINS:
            return ["*"]
        if not self.ORIGINS_SETTING:
            if self.IS_DEV:
                return [f"http://{host}:{port}" for host in ("localhost", "127.0.0.1") for port in (3000, 5173)]
            return []

        origins: List[str] = []
        for entry in _env_csv("ALLOWED_ORIGINS"):
            origin = entry.rstrip("/")
            if origin.startswith(("http://", "https://")) and origin not in origins:
                origins.append(origin)
            else:
                print(f"[CONFIG] Ignoring malformed origin {entry!r}")
        return origins

    # ─────────────────────────────────────────────────────────────
    # Diagnostics
    # ─────────────────────────────────────────────────────────────
    def log_summary(self) -> None:
        rows = [
            ("env", f"{self.FLASK_ENV or '(unset)'} dev={self.IS_DEV} render={self.IS_RENDER}"),
            ("port", self.PORT),
            ("database", self.HAS_DATABASE),
            ("stripe", f"{self.STRIPE_CONFIGURED} mode={self.STRIPE_MODE}" if self.STRIPE_CONFIGURED else False),
            ("s3", f"{self.AWS_CONFIGURED} region={self.AWS_REGION}"),
            ("buckets", f"{self.AWS_BUCKET_INPUT} / {self.AWS_BUCKET_OUTPUT} / {self.AWS_BUCKET_PREVIEW}"),
            ("openai", f"{self.OPENAI_CONFIGURED} model={self.OPENAI_IMAGE_MODEL}"),
            ("auth provider", self.AUTH_PROVIDER_CONFIGURED),
            ("previews", self.PREVIEW_ENABLED),
            ("cookie", f"{self.SESSION_COOKIE_NAME} domain={self.SESSION_COOKIE_DOMAIN!r} secure={self.SESSION_COOKIE_SECURE}"),
            ("session ttl", f"{self.SESSION_TTL_DAYS}d"),
        ]
        print("[CONFIG] ---- Animify settings ----")
        for label, value in rows:
            print(f"[CONFIG]   {label:<14} {value}")

    def validate(self) -> List[str]:
        """Warnings for settings production cannot run without. Empty in development."""
        if self.IS_DEV:
            return []

        checks = [
            (self.HAS_DATABASE, "DATABASE_URL missing: jobs and payments are not persisted"),
            (self.STRIPE_CONFIGURED, "STRIPE_SECRET_KEY/STRIPE_PRICE_ID missing: unlocking is disabled"),
            (bool(self.STRIPE_WEBHOOK_SECRET), "STRIPE_WEBHOOK_SECRET missing: webhooks are rejected"),
            (self.OPENAI_CONFIGURED, "OPENAI_API_KEY missing: every process call will fail"),
            (self.AWS_CONFIGURED, "AWS credentials missing: relying on the default boto3 credential chain"),
            (self.AUTH_PROVIDER_CONFIGURED, "AUTH_PROVIDER_URL/AUTH_PROVIDER_API_KEY missing: sign-in is disabled"),
            (bool(self.ALLOWED_ORIGINS), "ALLOWED_ORIGINS empty: browsers will be blocked by CORS"),
            (not self.ALLOW_ALL_ORIGINS, "ALLOWED_ORIGINS=* allows credentialed requests from any site"),
        ]
        return [message for ok, message in checks if not ok]

    def to_dict(self) -> dict:
        """Non-secret view for the health endpoint."""
        return {
            "environment": self.FLASK_ENV or None,
            "is_dev": self.IS_DEV,
            "has_database": self.HAS_DATABASE,
            "stripe_configured": self.STRIPE_CONFIGURED,
            "stripe_mode": self.STRIPE_MODE if self.STRIPE_CONFIGURED else None,
            "aws_configured": self.AWS_CONFIGURED,
            "openai_configured": self.OPENAI_CONFIGURED,
            "auth_provider_configured": self.AUTH_PROVIDER_CONFIGURED,
            "preview_enabled": self.PREVIEW_ENABLED,
        }


config = Config()
print(f"[CONFIG] Loaded (dev={config.IS_DEV}, render={config.IS_RENDER}, database={config.HAS_DATABASE})")
