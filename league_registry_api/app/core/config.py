"""
Simple configuration management.

The ``Settings`` dataclass reads configuration directly from
environment variables.  Defaults are provided for all fields so the
application starts in development without any vendor credentials;
vendor calls made without credentials fail loudly at call time.

Values that administrators change at runtime (accounting codes, for
example) are not kept here but in the ``settings`` table, see
``services.settings_service``.
"""

import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    """Application settings loaded from environment variables."""

    project_name: str = os.getenv("PROJECT_NAME", "League Registry API")
    api_version: str = os.getenv("API_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "")
    site_url: str = os.getenv("SITE_URL", "http://localhost:8000")

    secret_key: str = os.getenv("SECRET_KEY", "change_me")
    access_token_expire_minutes: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))
    algorithm: str = os.getenv("ALGORITHM", "HS256")

    # Optional static token for super‑administrator API access.  Requests
    # carrying this token are treated as user 1 with role 1.
    super_admin_static_token: str = os.getenv("SUPER_ADMIN_TOKEN", "")

    # Shared secret the scheduler presents as ``Authorization: Bearer``
    # when calling the ``/cron`` endpoints.  Empty disables those routes.
    cron_secret: str = os.getenv("CRON_SECRET", "")

    # Path to the SQLite database.  Relative paths are resolved against
    # the project root by ``core.db``.
    database_url: str = os.getenv("DATABASE_URL", "league_registry.db")

    # Stripe
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    stripe_api_version: str = os.getenv("STRIPE_API_VERSION", "")
    currency: str = os.getenv("CURRENCY", "usd")

    # Xero
    xero_client_id: str = os.getenv("XERO_CLIENT_ID", "")
    xero_client_secret: str = os.getenv("XERO_CLIENT_SECRET", "")
    xero_api_base: str = os.getenv("XERO_API_BASE", "https://api.xero.com/api.xro/2.0")
    xero_identity_url: str = os.getenv("XERO_IDENTITY_URL", "https://identity.xero.com/connect/token")

    # Loops (transactional email)
    loops_api_key: str = os.getenv("LOOPS_API_KEY", "")
    loops_api_base: str = os.getenv("LOOPS_API_BASE", "https://app.loops.so/api/v1")
    # Transactional template ids.  An event without a template is sent
    # through Loops' event endpoint instead.
    loops_membership_template_id: str = os.getenv("LOOPS_MEMBERSHIP_PURCHASE_TEMPLATE_ID", "")
    loops_registration_template_id: str = os.getenv("LOOPS_REGISTRATION_CONFIRMATION_TEMPLATE_ID", "")
    loops_waitlist_added_template_id: str = os.getenv("LOOPS_WAITLIST_ADDED_TEMPLATE_ID", "")
    loops_waitlist_selected_template_id: str = os.getenv("LOOPS_WAITLIST_SELECTED_TEMPLATE_ID", "")
    loops_alternate_selected_template_id: str = os.getenv("LOOPS_ALTERNATE_SELECTION_TEMPLATE_ID", "")
    loops_payment_failed_template_id: str = os.getenv("LOOPS_PAYMENT_FAILED_TEMPLATE_ID", "")
    loops_plan_payment_processed_template_id: str = os.getenv("LOOPS_PAYMENT_PLAN_PAYMENT_PROCESSED_TEMPLATE_ID", "")
    loops_plan_payment_failed_template_id: str = os.getenv("LOOPS_PAYMENT_PLAN_PAYMENT_FAILED_TEMPLATE_ID", "")

    # Lifetime of a ``processing`` registration hold, in minutes.
    reservation_minutes: int = int(os.getenv("RESERVATION_MINUTES", "5"))

    # Payment plans
    payment_plan_installments: int = int(os.getenv("PAYMENT_PLAN_INSTALLMENTS", "4"))
    payment_plan_interval_days: int = int(os.getenv("PAYMENT_PLAN_INTERVAL_DAYS", "30"))
    payment_plan_max_attempts: int = int(os.getenv("PAYMENT_PLAN_MAX_ATTEMPTS", "3"))
    payment_plan_retry_hours: int = int(os.getenv("PAYMENT_PLAN_RETRY_HOURS", "24"))


# Instantiate settings once so other modules can import it without
# repeatedly reading environment variables.  Environment variables
# must be set before this module is imported.
settings = Settings()
