import os
from dotenv import load_dotenv

load_dotenv()


def _float_list(raw: str) -> list[float]:
    return [float(part) for part in raw.split(",") if part.strip()]


# Fees (percent of the gross gig amount)
PLATFORM_FEE_PERCENT = float(os.getenv("PLATFORM_FEE_PERCENT", 10.0))
PAYMENT_FEE_CARD = float(os.getenv("PAYMENT_FEE_CARD", 3.5))
PAYMENT_FEE_EFT = float(os.getenv("PAYMENT_FEE_EFT", 0.85))

# Milestones
MAX_MILESTONE_REVISIONS_DEFAULT = int(os.getenv("MAX_MILESTONE_REVISIONS_DEFAULT", 2))

# Payouts
PAYOUT_BACKOFF_SECONDS = _float_list(os.getenv("PAYOUT_BACKOFF_SECONDS", "30,120,600"))
PAYOUT_WORKER_INTERVAL_SECONDS = int(os.getenv("PAYOUT_WORKER_INTERVAL_SECONDS", 60))

# Applications
COVER_LETTER_MIN = int(os.getenv("COVER_LETTER_MIN", 50))
COVER_LETTER_MAX = int(os.getenv("COVER_LETTER_MAX", 5000))
PROPOSED_RATE_MAX = float(os.getenv("PROPOSED_RATE_MAX", 1_000_000))
APPLICATION_ACTIVE_LIMIT = int(os.getenv("APPLICATION_ACTIVE_LIMIT", 1))

# Disputes
DISPUTE_RESPONSE_DAYS = int(os.getenv("DISPUTE_RESPONSE_DAYS", 7))
DISPUTE_SWEEP_INTERVAL_SECONDS = int(os.getenv("DISPUTE_SWEEP_INTERVAL_SECONDS", 3600))

# Event outbox
OUTBOX_DISPATCH_INTERVAL_SECONDS = int(os.getenv("OUTBOX_DISPATCH_INTERVAL_SECONDS", 5))

# Request handling
REQUEST_DEADLINE_SECONDS = float(os.getenv("REQUEST_DEADLINE_SECONDS", 15))

# Payment gateway
GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://sandbox.gateway.example.co.za")
GATEWAY_MERCHANT_ID = os.getenv("GATEWAY_MERCHANT_ID", "10000100")
GATEWAY_SECRET = os.getenv("GATEWAY_SECRET", "sandbox-secret")
GATEWAY_RETURN_URL = os.getenv("GATEWAY_RETURN_URL", "http://localhost:5173/payments/return")
GATEWAY_CANCEL_URL = os.getenv("GATEWAY_CANCEL_URL", "http://localhost:5173/payments/cancel")
GATEWAY_NOTIFY_URL = os.getenv("GATEWAY_NOTIFY_URL", "http://localhost:8000/api/v1/escrow/callback")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", 10))

# Auth
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-here")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Background jobs (payouts, outbox, dispute sweep) inside the API process
RUN_BACKGROUND_JOBS = os.getenv("RUN_BACKGROUND_JOBS", "true").lower() in ("1", "true", "yes")
