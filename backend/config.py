from dotenv import load_dotenv
from pathlib import Path
import os

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# MongoDB
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "agency_workflow")

# Auth
JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "your-secret-key-change-in-production-2024")

# Payment gateway
GATEWAY_API_KEY = os.environ.get("GATEWAY_API_KEY", "")
GATEWAY_BASE_URL = os.environ.get("GATEWAY_BASE_URL", "https://api.stripe.com")
GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))

# Invoicing
DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "usd")
INVOICE_NUMBER_PREFIX = os.environ.get("INVOICE_NUMBER_PREFIX", "INV")

# Rate limiting: "memory" (per process) or "mongo" (shared across instances)
INVOICE_CREATE_LIMIT_PER_MINUTE = int(os.environ.get("INVOICE_CREATE_LIMIT_PER_MINUTE", "10"))
RATE_LIMIT_BACKEND = os.environ.get("RATE_LIMIT_BACKEND", "memory")

# Deliverable review: may agency users approve/reject on the client's behalf
ALLOW_AGENCY_REVIEW = _flag("ALLOW_AGENCY_REVIEW", "true")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")
