import os

# ✅ Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./talentledger.db")
RUN_MIGRATIONS = os.getenv("RUN_MIGRATIONS", "0") == "1"

# ✅ Security
SECRET_KEY = os.getenv("SECRET_KEY")
ALGORITHM = os.getenv("ALGORITHM", "HS256")

# ✅ Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))

# ✅ Frontend
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# ✅ Credits
# What CreditGuard does when the post-operation deduction fails:
# "log_and_continue" or "fail_operation"
ON_CHARGE_FAILURE = os.getenv("ON_CHARGE_FAILURE", "log_and_continue")
PAST_DUE_GRACE_DAYS = int(os.getenv("PAST_DUE_GRACE_DAYS", "7"))
# Subscription credits expire this many days after allocation (0 = never)
CREDIT_EXPIRATION_DAYS = int(os.getenv("CREDIT_EXPIRATION_DAYS", "45"))

# ✅ Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

REQUIRED_SETTINGS = ("SECRET_KEY", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


def validate_settings() -> None:
    """
    Fail fast when required secrets are missing.

    Called once at application startup; a missing webhook secret or Stripe key
    must stop the process rather than surface later on the first webhook.

    Raises:
        ConfigurationError: If any required setting is unset or empty
    """
    from app.core.errors import ConfigurationError

    missing = [name for name in REQUIRED_SETTINGS if not globals().get(name)]
    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

    if ON_CHARGE_FAILURE not in ("log_and_continue", "fail_operation"):
        raise ConfigurationError(f"Invalid ON_CHARGE_FAILURE value: {ON_CHARGE_FAILURE}")
