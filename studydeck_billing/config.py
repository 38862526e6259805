import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    APP_ENV = "development"

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- Payment provider (Stripe) ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_MONTHLY_PRICE_ID = os.environ.get("STRIPE_MONTHLY_PRICE_ID")
    STRIPE_YEARLY_PRICE_ID = os.environ.get("STRIPE_YEARLY_PRICE_ID")
    WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("WEBHOOK_TOLERANCE_SECONDS", 300))

    # Provider calls must never hold a worker indefinitely.
    PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", 10))
    # Some accounts only allow cancellation through the hosted portal.
    PROVIDER_DIRECT_CANCEL_ENABLED = _env_flag("PROVIDER_DIRECT_CANCEL_ENABLED", "true")

    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")
    CSRF_ALLOWED_ORIGINS = os.environ.get("CSRF_ALLOWED_ORIGINS", "")

    # --- Scheduled jobs ---
    CRON_SECRET = os.environ.get("CRON_SECRET")
    RECONCILE_BATCH_LIMIT = int(os.environ.get("RECONCILE_BATCH_LIMIT", 250))
    REMINDER_DAY_OFFSETS = os.environ.get("REMINDER_DAY_OFFSETS", "3,7")
    EXPIRED_TO_FREE_DAYS = int(os.environ.get("EXPIRED_TO_FREE_DAYS", 7))
    SYNC_MIN_INTERVAL_SECONDS = int(os.environ.get("SYNC_MIN_INTERVAL_SECONDS", 300))
    NORMALIZE_MIN_INTERVAL_SECONDS = int(
        os.environ.get("NORMALIZE_MIN_INTERVAL_SECONDS", 3600)
    )
    REMINDER_MIN_INTERVAL_SECONDS = int(
        os.environ.get("REMINDER_MIN_INTERVAL_SECONDS", 3600)
    )

    # --- Audit side channel ---
    # JSON-lines file that receives audit entries the database refused.
    AUDIT_FALLBACK_PATH = os.environ.get("AUDIT_FALLBACK_PATH")

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "StudyDeck")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- Rate limiting (Flask-Limiter) ---
    # memory:// is per process; point at redis:// when running several workers.
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
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
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled."""

    APP_ENV = "testing"
    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_MONTHLY_PRICE_ID = "price_monthly_test"
    STRIPE_YEARLY_PRICE_ID = "price_yearly_test"
    PROVIDER_DIRECT_CANCEL_ENABLED = True
    APP_BASE_URL = "http://localhost:5000"
    CSRF_ALLOWED_ORIGINS = "https://app.studydeck.test"
    CRON_SECRET = "cron-test-secret"
    SYNC_MIN_INTERVAL_SECONDS = 0
    NORMALIZE_MIN_INTERVAL_SECONDS = 0
    REMINDER_MIN_INTERVAL_SECONDS = 0
    AUDIT_FALLBACK_PATH = None  # resolved under instance_path per app
    MAIL_USERNAME = None
    MAIL_PASSWORD = None
    WTF_CSRF_ENABLED = False  # disable CSRF for test forms
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    APP_ENV = "production"
    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True

    @staticmethod
    def validate():
        Config.validate()
        if not os.environ.get("CRON_SECRET"):
            raise RuntimeError("Missing required environment variables: CRON_SECRET")


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
