import os
import tempfile

# Pin the environment before anything imports ``libs.common.config``: several
# modules read settings at import time. Tests never touch a real database,
# Redis, Stripe or courier account.
_TEST_DIR = tempfile.mkdtemp(prefix="orders-tests-")

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/orders.db"
os.environ["REDIS_URL"] = "memory://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["UBER_CLIENT_ID"] = ""
os.environ["UBER_WEBHOOK_SECRET"] = "courier-test-secret"
os.environ["TIMEZONE"] = "America/Toronto"
os.environ["DISPATCH_PENDING_WAIT_SECONDS"] = "5"
os.environ["GATEWAY_TIMEOUT_SECONDS"] = "5"

from libs.common.config import get_settings  # noqa: E402

# Clear cached settings to reload with the env vars above
get_settings.cache_clear()
