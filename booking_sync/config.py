import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking_sync.db")

# Calendly (scheduling provider) Configuration
CALENDLY_API_BASE_URL = os.getenv("CALENDLY_API_BASE_URL", "https://api.calendly.com")
CALENDLY_API_TOKEN = os.getenv("CALENDLY_API_TOKEN")
# Fallback signing keys, used until a webhook subscription has been provisioned
CALENDLY_WEBHOOK_SIGNING_KEY = os.getenv("CALENDLY_WEBHOOK_SIGNING_KEY")
CALENDLY_WEBHOOK_SIGNING_KEY_SECONDARY = os.getenv("CALENDLY_WEBHOOK_SIGNING_KEY_SECONDARY")
WEBHOOK_CALLBACK_URL = os.getenv("WEBHOOK_CALLBACK_URL")
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
WEBHOOK_MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "5"))

# Provider HTTP behaviour
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "5"))
PROVIDER_MAX_RETRIES = int(os.getenv("PROVIDER_MAX_RETRIES", "3"))
PROVIDER_BACKOFF_BASE_SECONDS = float(os.getenv("PROVIDER_BACKOFF_BASE_SECONDS", "0.5"))
# Longest window a single availability request may cover (provider calls are split into 7-day chunks)
PROVIDER_MAX_QUERY_DAYS = int(os.getenv("PROVIDER_MAX_QUERY_DAYS", "60"))

# Dodo Payments Configuration
DODO_PAYMENTS_API_KEY = os.getenv("DODO_PAYMENTS_API_KEY")
DODO_PAYMENTS_WEBHOOK_SECRET = os.getenv("DODO_PAYMENTS_WEBHOOK_SECRET")
# "test_mode" or "live_mode" - default to test for safety
DODO_PAYMENTS_ENVIRONMENT = os.getenv("DODO_PAYMENTS_ENVIRONMENT", "test_mode")
# Pay-what-you-want product used for per-booking amounts
DODO_ADHOC_PRODUCT_ID = os.getenv("DODO_ADHOC_PRODUCT_ID")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Identity provider (tokens are issued externally; only the subject claim is used)
IDENTITY_JWT_SECRET = os.getenv("IDENTITY_JWT_SECRET")
IDENTITY_JWT_ALGORITHM = os.getenv("IDENTITY_JWT_ALGORITHM", "HS256")
IDENTITY_JWT_AUDIENCE = os.getenv("IDENTITY_JWT_AUDIENCE")

# Frontend base URL for payment redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Redis (rate limiting + arq worker)
REDIS_URL = os.getenv("REDIS_URL")
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"

# Identity subjects allowed to provision/rotate webhook subscriptions (comma separated)
ADMIN_USER_IDS = {uid.strip() for uid in os.getenv("ADMIN_USER_IDS", "").split(",") if uid.strip()}
# How long a rotated-out signing secret keeps verifying deliveries
SIGNING_SECRET_GRACE_HOURS = int(os.getenv("SIGNING_SECRET_GRACE_HOURS", "24"))
