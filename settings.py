import os


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


APP_NAME = "Travonex"

ENV = _env_or("ENV", "dev").lower()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = _env_or("JWT_SECRET", "change-me-travonex-jwt")
JWT_TTL_DAYS = int(_env_or("JWT_TTL_DAYS", "7"))

RAZORPAY_KEY_ID = _env_or("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = _env_or("RAZORPAY_KEY_SECRET", "")
RAZORPAY_API_BASE = _env_or("RAZORPAY_API_BASE", "https://api.razorpay.com/v1").rstrip("/")

FIREBASE_API_KEY = _env_or("FIREBASE_API_KEY", "")

PLATFORM_COMMISSION_RATE = float(_env_or("PLATFORM_COMMISSION_RATE", "0.10"))
REFERRAL_BONUS = float(_env_or("REFERRAL_BONUS", "100"))
PENDING_BOOKING_TTL_MINUTES = int(_env_or("PENDING_BOOKING_TTL_MINUTES", "30"))

ALLOWED_ORIGINS = _env_or("ALLOWED_ORIGINS", "")

ENABLE_API_DOCS = _env_or("ENABLE_API_DOCS", "1" if ENV in ("dev", "test") else "0").lower() in (
    "1",
    "true",
    "yes",
    "on",
)


def is_prod_env() -> bool:
    env = (os.getenv("ENV") or ENV).strip().lower()
    return env in ("prod", "production", "staging")


def enforce_secret_baseline() -> None:
    """
    Fail fast outside dev/test when the token signing secret is left at the
    insecure default or the payment signature secret is missing.
    """
    if ENV in ("dev", "test"):
        return
    if JWT_SECRET == "change-me-travonex-jwt":
        raise RuntimeError("JWT_SECRET must be set in non-dev environments")
    if not RAZORPAY_KEY_SECRET:
        raise RuntimeError("RAZORPAY_KEY_SECRET must be set in non-dev environments")
