import json
import logging
import os
from pathlib import Path
from typing import Dict, Tuple

logger = logging.getLogger(__name__)


def int_env(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: expected an integer", name, raw)
        return default
    if value < minimum:
        logger.warning("Ignoring %s=%r: must be >= %s", name, raw, minimum)
        return default
    return value


def float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: expected a number", name, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring %s=%r: must be positive", name, raw)
        return default
    return value


def bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _bounds_env(name: str, default: Tuple[float, float, float, float]) -> Tuple[float, float, float, float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        lat_min, lat_max, lng_min, lng_max = (float(part) for part in raw.split(","))
    except ValueError:
        logger.warning("Ignoring %s=%r: expected lat_min,lat_max,lng_min,lng_max", name, raw)
        return default
    if lat_min >= lat_max or lng_min >= lng_max:
        logger.warning("Ignoring %s=%r: empty bounding box", name, raw)
        return default
    return lat_min, lat_max, lng_min, lng_max


def _facility_numbers_env(name: str, default: Dict[str, str]) -> Dict[str, str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return dict(default)
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring %s: not valid JSON", name)
        return dict(default)
    if not isinstance(parsed, dict):
        logger.warning("Ignoring %s: expected a JSON object", name)
        return dict(default)
    return {str(facility).strip(): str(number).strip() for facility, number in parsed.items() if str(facility).strip()}


# Storage
DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "carelink.sqlite3")
DB_PATH = os.getenv("CARELINK_DB_PATH", DEFAULT_DB_PATH)
DB_TIMEOUT_SECONDS = float_env("DB_TIMEOUT_SECONDS", 5.0)

SEED_DEMO_DATA = bool_env("CARELINK_SEED_DEMO", True)

# Matching
MATCH_RADIUS_KM = float_env("MATCH_RADIUS_KM", 10.0)
MATCH_MAX_RADIUS_KM = 50.0
MATCH_MAX_RESULTS = int_env("MATCH_MAX_RESULTS", 50)

# Sri Lanka by default
SERVICE_AREA_BOUNDS = _bounds_env("SERVICE_AREA_BOUNDS", (5.8, 9.9, 79.5, 81.9))

# Payments
PLATFORM_FEE_PERCENT = int_env("PLATFORM_FEE_PERCENT", 10, minimum=0)
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "LKR")
PAYHERE_MODE = os.getenv("PAYHERE_MODE", "sandbox").strip().lower()
PAYHERE_MERCHANT_ID = os.getenv("PAYHERE_MERCHANT_ID", "")
PAYHERE_MERCHANT_SECRET = os.getenv("PAYHERE_MERCHANT_SECRET", "")
PAYHERE_APP_ID = os.getenv("PAYHERE_APP_ID", "")
PAYHERE_APP_SECRET = os.getenv("PAYHERE_APP_SECRET", "")
PAYHERE_TIMEOUT_SECONDS = float_env("PAYHERE_TIMEOUT_SECONDS", 10.0)

# Messaging
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER", "")
SMS_TIMEOUT_SECONDS = float_env("SMS_TIMEOUT_SECONDS", 10.0)
FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()
PUSH_TIMEOUT_SECONDS = float_env("PUSH_TIMEOUT_SECONDS", 10.0)

# Emergency
EMERGENCY_DEFAULT_NUMBER = os.getenv("EMERGENCY_DEFAULT_NUMBER", "1990")
EMERGENCY_FACILITY_NUMBERS = _facility_numbers_env(
    "EMERGENCY_FACILITY_NUMBERS",
    {
        "Colombo General Hospital": "011-2691111",
        "National Hospital": "011-2691111",
        "Asiri Hospital": "011-4665500",
        "Nawaloka Hospital": "011-5777777",
        "Durdans Hospital": "011-2140000",
        "Lanka Hospitals": "011-5530000",
    },
)

# HTTP
AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")
AUTH_TOKEN_TTL_HOURS = int_env("AUTH_TOKEN_TTL_HOURS", 24)
AUTH_REQUIRED = bool_env("AUTH_REQUIRED", False)
PASSWORD_HASH_ITERATIONS = int_env("PASSWORD_HASH_ITERATIONS", 120_000, minimum=1000)
PASSWORD_MIN_LENGTH = 8
# Demo accounts get no password unless one is configured.
DEMO_PASSWORD = os.getenv("CARELINK_DEMO_PASSWORD", "")
if DEMO_PASSWORD and len(DEMO_PASSWORD) < PASSWORD_MIN_LENGTH:
    logger.warning("Ignoring CARELINK_DEMO_PASSWORD: must be at least %s characters", PASSWORD_MIN_LENGTH)
    DEMO_PASSWORD = ""
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
