import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
DEBUG = _get_bool(os.getenv("DEBUG"), default=False)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./teletherapy.db")
CORS_ALLOW_ORIGINS = _get_list(os.getenv("CORS_ALLOW_ORIGINS"), ["http://localhost:3000"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = _get_int(os.getenv("JWT_EXPIRES_MINUTES"), 60)

# Booking rules
DEFAULT_SESSION_MINUTES = _get_int(os.getenv("DEFAULT_SESSION_MINUTES"), 50)
MAX_SESSION_MINUTES = _get_int(os.getenv("MAX_SESSION_MINUTES"), 600)
MIN_ADVANCE_BOOKING_HOURS = _get_int(os.getenv("MIN_ADVANCE_BOOKING_HOURS"), 24)
MAX_ADVANCE_BOOKING_DAYS = _get_int(os.getenv("MAX_ADVANCE_BOOKING_DAYS"), 90)
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "aed")
# Clients must cancel at least this long before the session.
MIN_CANCELLATION_NOTICE_HOURS = _get_int(os.getenv("MIN_CANCELLATION_NOTICE_HOURS"), 24)

# Standard slot generation
SLOT_DAY_START = os.getenv("SLOT_DAY_START", "09:00")
SLOT_DAY_END = os.getenv("SLOT_DAY_END", "17:00")
SLOT_INTERVAL_MINUTES = _get_int(os.getenv("SLOT_INTERVAL_MINUTES"), 60)

# Realtime bridge
REALTIME_MAX_RECENT_EVENTS = _get_int(os.getenv("REALTIME_MAX_RECENT_EVENTS"), 50)
REALTIME_MAX_CONFLICTS = _get_int(os.getenv("REALTIME_MAX_CONFLICTS"), 10)
REALTIME_MAX_NOTIFICATIONS = _get_int(os.getenv("REALTIME_MAX_NOTIFICATIONS"), 20)
REALTIME_SUBSCRIPTION_QUEUE_SIZE = _get_int(os.getenv("REALTIME_SUBSCRIPTION_QUEUE_SIZE"), 100)
REALTIME_RECONNECT_BASE_SECONDS = float(os.getenv("REALTIME_RECONNECT_BASE_SECONDS", "1.0"))
REALTIME_RECONNECT_MAX_SECONDS = float(os.getenv("REALTIME_RECONNECT_MAX_SECONDS", "30.0"))
REALTIME_MAX_RECONNECT_ATTEMPTS = _get_int(os.getenv("REALTIME_MAX_RECONNECT_ATTEMPTS"), 10)
NOTIFICATION_DURATION_SECONDS = float(os.getenv("NOTIFICATION_DURATION_SECONDS", "5.0"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if MIN_ADVANCE_BOOKING_HOURS < 0 or MAX_ADVANCE_BOOKING_DAYS <= 0:
        raise RuntimeError("Booking window settings must be positive.")
