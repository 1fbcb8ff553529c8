from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized application settings loaded from environment.

    Required env vars (.env):
      - DATABASE_URL (Postgres connection string; sqlite:// for local/tests)
      - AUTH_JWT_SECRET (HS256 signing secret for bearer tokens)

    Optional:
      - provider credentials (Stripe, PayPal, NOWPayments, Shippo)
      - direct carrier credentials (CANADA_POST_*, UPS_*)
      - GOAFFPRO_* tokens, OPENAI_API_KEY
      - SMTP_* for receipt email

    Provider credentials saved through the admin `payments` config domain
    take precedence over the values here.
    """

    PROJECT_NAME: str = "ANOINT Array Storefront API"
    API_V1_STR: str = "/api"

    DATABASE_URL: str

    # Bearer token auth
    AUTH_JWT_SECRET: str
    AUTH_JWT_ALG: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # Used to build provider redirect / callback URLs
    PUBLIC_BASE_URL: str = "http://localhost:3002"
    BRAND_NAME: str = "ANOINT Array"
    HOME_COUNTRY: str = "CA"

    # Stripe
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_SECRET_TEST_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # PayPal
    PAYPAL_API_BASE_LIVE: str = "https://api.paypal.com"
    PAYPAL_API_BASE_SANDBOX: str = "https://api.sandbox.paypal.com"
    PAYPAL_CLIENT_ID_LIVE: str | None = None
    PAYPAL_SECRET_LIVE: str | None = None
    PAYPAL_CLIENT_ID_SANDBOX: str | None = None
    PAYPAL_CLIENT_SECRET_SANDBOX: str | None = None

    # NOWPayments
    NOWPAYMENTS_API_BASE: str = "https://api.nowpayments.io"
    NOWPAYMENTS_API_KEY: str | None = None
    NOWPAYMENTS_IPN_SECRET: str | None = None

    # Shippo
    SHIPPO_API_BASE: str = "https://api.goshippo.com"
    SHIPPO_API_KEY: str | None = None
    SHIPPO_API_TEST_KEY: str | None = None
    SHIPPO_USE_TEST_KEY: bool = True
    SHIPPO_CP_ACCOUNT_ID: str | None = None

    # Canada Post web services (direct labels); ct.soa-gw is the sandbox
    CANADA_POST_API_BASE: str = "https://ct.soa-gw.canadapost.ca"
    CANADA_POST_USERNAME: str | None = None
    CANADA_POST_PASSWORD: str | None = None
    CANADA_POST_CUSTOMER_NUMBER: str | None = None
    CANADA_POST_DOMESTIC_SERVICE: str = "DOM.EP"
    CANADA_POST_USA_SERVICE: str = "USA.EP"
    CANADA_POST_INTL_SERVICE: str = "INT.XP"

    # UPS REST APIs (direct labels); wwwcie is the customer integration env
    UPS_API_BASE: str = "https://wwwcie.ups.com"
    UPS_CLIENT_ID: str | None = None
    UPS_CLIENT_SECRET: str | None = None
    UPS_ACCOUNT_NUMBER: str | None = None
    # 11 = UPS Standard
    UPS_SERVICE_CODE: str = "11"

    # FX rates
    FX_API_URL: str = "https://api.exchangerate.host/latest"
    FX_CACHE_PATH: str = "data/currency-cache.json"
    FX_CACHE_TTL_HOURS: int = 12

    # Affiliate tracking (GoAffPro)
    GOAFFPRO_ACCESS_TOKEN: str | None = None
    GOAFFPRO_PUBLIC_TOKEN: str | None = None

    # Support chat
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    SUPPORT_KB_DIR: str = "data/support-kb/md"

    # Receipt email
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_FROM_EMAIL: str | None = None
    SMTP_FROM_NAME: str = "ANOINT Array"
    SMTP_REPLY_TO: str | None = None
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False
    SMTP_TIMEOUT_SECONDS: float = 30.0

    # Uploaded assets served by /files
    UPLOADS_DIR: str = "uploads"

    # Outbound HTTP timeout (seconds)
    HTTP_TIMEOUT_SECONDS: float = 30.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings loader.
    Ensures we don't re-parse .env on every import / request.
    """
    return Settings()
