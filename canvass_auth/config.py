from typing import Annotated, Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Used only when OTP_SECRET is missing. Startup logs this loudly.
FALLBACK_OTP_SECRET = "default-dev-secret-do-not-use-in-prod"

SENDGRID_MAIL_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENV: Literal["dev", "prod", "test"] = "dev"

    # signing root for OTP credentials and session tokens
    OTP_SECRET: Optional[str] = None
    REQUIRE_OTP_SECRET: bool = False

    ADMIN_EMAIL: str = "admin@example.com"

    OTP_TTL_SECONDS: int = 5 * 60
    SESSION_TTL_SECONDS: int = 24 * 60 * 60

    # outbound mail
    FROM_EMAIL: Optional[str] = None
    OTP_SUBJECT: str = "Your admin OTP"
    MAIL_TIMEOUT_SECONDS: float = 15.0

    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_API_URL: str = SENDGRID_MAIL_SEND_URL

    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    SMTP_SECURE: bool = False

    # http / observability
    CORS_ORIGINS: Annotated[list[str], NoDecode] = ["*"]
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    AUDIT_DIR: Optional[str] = None

    @field_validator(
        "OTP_SECRET",
        "FROM_EMAIL",
        "SENDGRID_API_KEY",
        "SMTP_HOST",
        "SMTP_USER",
        "SMTP_PASS",
        "AUDIT_DIR",
        mode="before",
    )
    @classmethod
    def blank_is_unset(cls, v):
        # .env files often carry `KEY=` placeholders
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("ADMIN_EMAIL")
    @classmethod
    def normalize_admin_email(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("ADMIN_EMAIL cannot be empty")
        return v

    @field_validator("OTP_TTL_SECONDS", "SESSION_TTL_SECONDS")
    @classmethod
    def positive_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("TTL must be a positive number of seconds")
        return v

    @field_validator("SMTP_SECURE", "REQUIRE_OTP_SECRET", "LOG_JSON", mode="before")
    @classmethod
    def normalize_flag(cls, v):
        # accept 0/1, "true"/"false" from env consistently
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return bool(v)
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false", "no", "off", "")
        return False

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def normalize_origins(cls, v):
        # ensure list[str] even if someone sets CORS_ORIGINS="https://a,https://b"
        if isinstance(v, str):
            parts = [p.strip().rstrip("/") for p in v.split(",") if p.strip()]
            return parts or ["*"]
        return v

    @property
    def uses_fallback_secret(self) -> bool:
        return self.OTP_SECRET is None

    @property
    def signing_secret(self) -> bytes:
        return (self.OTP_SECRET or FALLBACK_OTP_SECRET).encode("utf-8")

    @property
    def otp_ttl_ms(self) -> int:
        return self.OTP_TTL_SECONDS * 1000

    @property
    def session_ttl_ms(self) -> int:
        return self.SESSION_TTL_SECONDS * 1000


def get_settings() -> Settings:
    return Settings()
