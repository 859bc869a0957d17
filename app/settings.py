import os

db_url = os.environ.get("DB_URL", "sqlite+aiosqlite:///./bookings.db")
users_ms_url = os.environ.get("USERS_MS_URL", "http://localhost:8000")
catalog_ms_url = os.environ.get("CATALOG_MS_URL", "http://localhost:8001")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

stripe_secret_key = os.environ.get("STRIPE_SECRET_KEY", "")
stripe_webhook_secret = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
payment_currency = os.environ.get("PAYMENT_CURRENCY", "usd")

# Deadlines, in seconds
processor_timeout = float(os.environ.get("PROCESSOR_TIMEOUT", "10"))
store_timeout = float(os.environ.get("STORE_TIMEOUT", "5"))
catalog_timeout = float(os.environ.get("CATALOG_TIMEOUT", "5"))

log_level = os.environ.get("LOG_LEVEL", "INFO")
generate_schemas = os.environ.get("GENERATE_SCHEMAS", "false").lower() in ("1", "true", "yes")
auto_start_interval = float(os.environ.get("AUTO_START_INTERVAL", "0"))
