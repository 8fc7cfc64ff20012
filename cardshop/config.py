import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./cardshop.db")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# 'proxy' | 'client' | 'disabled'
REFUND_MODE = os.getenv("REFUND_MODE", "disabled").lower()
# refunded orders give back delivered (sold) cards too when set
REFUND_RELEASE_SOLD = os.getenv("REFUND_RELEASE_SOLD", "0") == "1"

# payment gateway (epay-style merchant API)
PAY_API_URL = os.environ.get("PAY_API_URL", "")
PAY_REFUND_URL = os.environ.get("PAY_REFUND_URL", "")
PAY_PID = os.environ.get("PAY_PID", "")
PAY_KEY = os.environ.get("PAY_KEY", "")
# page the operator opens to pass the gateway's bot check
PAY_VERIFY_URL = os.environ.get("PAY_VERIFY_URL", PAY_API_URL)
PAY_TIMEOUT = float(os.environ.get("PAY_TIMEOUT", "15"))

# pending orders keep their locked cards this long
ORDER_LOCK_TTL_SECONDS = int(os.environ.get("ORDER_LOCK_TTL_SECONDS", "900"))

# 'sql' | 'redis'
RESTOCK_BACKEND = os.getenv("RESTOCK_BACKEND", "sql").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")


def refund_url() -> str:
    if PAY_REFUND_URL:
        return PAY_REFUND_URL
    if PAY_API_URL:
        return PAY_API_URL.rstrip("/") + "/api.php"
    return ""

# webhook signing secret shared with the mock payment provider
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
