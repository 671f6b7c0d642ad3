import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Eversend (card + mobile money) ---
    EVERSEND_API_URL = os.environ.get(
        "EVERSEND_API_URL", "https://api.eversend.co/v1"
    )
    EVERSEND_API_KEY = os.environ.get("EVERSEND_API_KEY")
    EVERSEND_WEBHOOK_SECRET = os.environ.get("EVERSEND_WEBHOOK_SECRET")

    # --- Flutterwave (express pay) ---
    FLUTTERWAVE_API_URL = os.environ.get(
        "FLUTTERWAVE_API_URL", "https://api.flutterwave.com"
    )
    FLUTTERWAVE_SECRET_KEY = os.environ.get("FLUTTERWAVE_SECRET_KEY")
    FLUTTERWAVE_WEBHOOK_SECRET = os.environ.get("FLUTTERWAVE_WEBHOOK_SECRET")

    # payment method -> gateway name
    PAYMENT_METHOD_GATEWAYS = {
        "card": "eversend",
        "mobile_money": "eversend",
        "express_pay": "flutterwave",
    }
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")

    # --- Payment orchestration tunables ---
    GATEWAY_TIMEOUT_SECONDS = int(os.environ.get("GATEWAY_TIMEOUT_SECONDS", 15))
    IDEMPOTENCY_BUCKET_SECONDS = int(
        os.environ.get("IDEMPOTENCY_BUCKET_SECONDS", 60)
    )
    RECONCILE_AFTER_MINUTES = int(os.environ.get("RECONCILE_AFTER_MINUTES", 30))
    RECONCILE_MAX_ATTEMPTS = int(os.environ.get("RECONCILE_MAX_ATTEMPTS", 5))
    # A pending row older than this never got its gateway answer
    PENDING_TIMEOUT_MINUTES = int(os.environ.get("PENDING_TIMEOUT_MINUTES", 15))
    # A received/processing webhook event older than this lost its worker
    WEBHOOK_STALE_MINUTES = int(os.environ.get("WEBHOOK_STALE_MINUTES", 10))
    RECONCILE_BACKOFF_MINUTES = int(
        os.environ.get("RECONCILE_BACKOFF_MINUTES", 5)
    )
    # Refresh-on-poll hits the gateway; can be switched off under load.
    POLL_REFRESH_ENABLED = _env_flag("POLL_REFRESH_ENABLED", "true")

    # --- Auth tokens (issued by the identity provider) ---
    AUTH_TOKEN_SALT = os.environ.get("AUTH_TOKEN_SALT", "tierpay-auth")
    AUTH_TOKEN_MAX_AGE = int(os.environ.get("AUTH_TOKEN_MAX_AGE", 3600))

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "EVERSEND_API_KEY",
            "EVERSEND_WEBHOOK_SECRET",
            "FLUTTERWAVE_SECRET_KEY",
            "FLUTTERWAVE_WEBHOOK_SECRET",
            "APP_BASE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, rate limits off, fake gateway secrets."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    APP_BASE_URL = "http://localhost:5000"
    EVERSEND_API_URL = "https://eversend.test/v1"
    EVERSEND_API_KEY = "ev_test_fake"
    EVERSEND_WEBHOOK_SECRET = "ev_whsec_test_fake"
    FLUTTERWAVE_API_URL = "https://flutterwave.test"
    FLUTTERWAVE_SECRET_KEY = "FLWSECK_TEST-fake"
    FLUTTERWAVE_WEBHOOK_SECRET = "flw_whsec_test_fake"
    GATEWAY_TIMEOUT_SECONDS = 2
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
