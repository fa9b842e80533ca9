import os

# ✅ Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./entitlements.db")
RUN_MIGRATIONS = os.getenv("RUN_MIGRATIONS", "0") == "1"

# ✅ Security
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# ✅ Renewal cron
AUTO_RENEW_SECRET_TOKEN = os.getenv("AUTO_RENEW_SECRET_TOKEN")

# ✅ PayWay
PAYWAY_MERCHANT_ID = os.getenv("PAYWAY_MERCHANT_ID")
PAYWAY_API_KEY = os.getenv("PAYWAY_API_KEY")
PAYWAY_PURCHASE_URL = os.getenv(
    "PAYWAY_PURCHASE_URL",
    "https://checkout-sandbox.payway.com.kh/api/payment-gateway/v1/payments/purchase",
)
PAYWAY_CHECK_TRANSACTION_URL = os.getenv(
    "PAYWAY_CHECK_TRANSACTION_URL",
    "https://checkout-sandbox.payway.com.kh/api/payment-gateway/v1/payments/check-transaction",
)
PAYWAY_TIMEOUT_SECONDS = float(os.getenv("PAYWAY_TIMEOUT_SECONDS", "30"))

# ✅ Billing
HOST = os.getenv("HOST", "http://localhost:3000")
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")
BILLING_TIMEZONE = os.getenv("BILLING_TIMEZONE", "UTC")

# ✅ Retry policy for status writes
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY_SECONDS = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "1.0"))

# ✅ App
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]
