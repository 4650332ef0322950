import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("SHIFTLEDGER_DB_PATH", BASE_DIR / "database" / "shiftledger.db"))
ADMIN_USERNAME = os.getenv("SHIFTLEDGER_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("SHIFTLEDGER_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = os.getenv("SHIFTLEDGER_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("SHIFTLEDGER_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return fallback
    try:
        parsed = int(value.strip())
    except ValueError:
        return fallback
    return max(minimum, parsed)


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("SHIFTLEDGER_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("SHIFTLEDGER_CORS_ALLOW_METHODS"),
    ["GET", "POST", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("SHIFTLEDGER_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("SHIFTLEDGER_CORS_ALLOW_CREDENTIALS"), True)

LOG_LEVEL = (os.getenv("SHIFTLEDGER_LOG_LEVEL", "INFO").strip() or "INFO").upper()
DB_TIMEOUT_SECONDS = float(_parse_int(os.getenv("SHIFTLEDGER_DB_TIMEOUT_SECONDS"), 10, minimum=1))

# Wall-clock shift times are interpreted in this zone.
TZ = os.getenv("SHIFTLEDGER_TZ", "UTC").strip() or "UTC"

RECONCILE_ENABLED = _parse_bool(os.getenv("SHIFTLEDGER_RECONCILE_ENABLED"), True)
RECONCILE_INTERVAL_SECONDS = _parse_int(
    os.getenv("SHIFTLEDGER_RECONCILE_INTERVAL_SECONDS"),
    60,
    minimum=1,
)
RECONCILE_LOOKBACK_SECONDS = _parse_int(os.getenv("SHIFTLEDGER_RECONCILE_LOOKBACK_SECONDS"), 90)
RECONCILE_LOOKAHEAD_SECONDS = _parse_int(os.getenv("SHIFTLEDGER_RECONCILE_LOOKAHEAD_SECONDS"), 30)
SWEEP_LOOKBACK_HOURS = _parse_int(os.getenv("SHIFTLEDGER_SWEEP_LOOKBACK_HOURS"), 24, minimum=1)

LATE_TOLERANCE_MINUTES = _parse_int(os.getenv("SHIFTLEDGER_LATE_TOLERANCE_MINUTES"), 5)
EARLY_LEAVE_TOLERANCE_MINUTES = _parse_int(os.getenv("SHIFTLEDGER_EARLY_LEAVE_TOLERANCE_MINUTES"), 5)

EXCUSE_NOTES_MAX_LENGTH = 500
