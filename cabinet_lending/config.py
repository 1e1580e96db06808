import os

from dotenv import load_dotenv

load_dotenv()


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


TOKEN_TTL_MINUTES = _int_env("TOKEN_TTL_MINUTES", 30)
TOKEN_MAX_EXTENSION_MINUTES = 24 * 60

LOW_STOCK_THRESHOLD = _int_env("LOW_STOCK_THRESHOLD", 2)
FAULTY_DAYS_THRESHOLD = _int_env("FAULTY_DAYS_THRESHOLD", 21)
FOLLOW_UP_DAYS = _int_env("FOLLOW_UP_DAYS", 7)

NOTIFY_WEBHOOK_URL = (os.environ.get("NOTIFY_WEBHOOK_URL") or "").strip()
NOTIFY_WEBHOOK_TOKEN = (os.environ.get("NOTIFY_WEBHOOK_TOKEN") or "").strip()
NOTIFY_TIMEOUT_SECONDS = _int_env("NOTIFY_TIMEOUT_SECONDS", 10)

CRON_SECRET = (os.environ.get("CRON_SECRET") or "").strip()

CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
CORS_ALLOW_CREDENTIALS = _bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    CORS_ALLOW_CREDENTIALS = False

APP_BASE_URL = (os.environ.get("APP_BASE_URL") or "http://localhost:3000").strip().rstrip("/")
