import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as authcore.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "authcore.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bearer token transport
    AUTH_HEADER_PREFIX = "Bearer"
    AUTH_QUERY_PARAM = "token"  # GET/HEAD only

    # Reverse proxies in front of the app; X-Forwarded-For is ignored when 0
    TRUSTED_PROXY_COUNT = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))

    # Temporary sessions handed out mid-login
    PENDING_2FA_TTL_SECONDS = 10 * 60
    PENDING_PASSWORD_CHANGE_TTL_SECONDS = 5 * 60

    # last_activity is written at most this often per session
    SESSION_TOUCH_INTERVAL_SECONDS = 60

    # Background sweeps (disabled when TESTING)
    SESSION_SWEEP_INTERVAL_SECONDS = int(os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", "300"))
    SESSION_RETENTION_DAYS = int(os.getenv("SESSION_RETENTION_DAYS", "30"))
    CHALLENGE_SWEEP_INTERVAL_SECONDS = 60
    ENABLE_BACKGROUND_SWEEPS = os.getenv("ENABLE_BACKGROUND_SWEEPS", "true").lower() == "true"

    # Simple IP rate limit for login endpoint
    LOGIN_RATE_WINDOW_SECONDS = 60      # window size
    LOGIN_RATE_MAX_REQUESTS = 20        # max login requests per IP per window

    # Two-factor
    TWO_FACTOR_ISSUER = os.getenv("TWO_FACTOR_ISSUER", "AuthCore")
    TOTP_VALID_WINDOW = 2               # +/- 30s steps
    EMAIL_CODE_LENGTH = 6
    EMAIL_CODE_TTL_SECONDS = 10 * 60
    EMAIL_CODE_MAX_ATTEMPTS = int(os.getenv("EMAIL_CODE_MAX_ATTEMPTS", "5"))
    BACKUP_CODE_COUNT = 10
    BACKUP_CODE_LENGTH = 8

    # bcrypt cost
    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    # Runtime-editable settings; a system_settings row overrides the default.
    SYSTEM_SETTINGS_DEFAULTS = {
        "lockoutEnabled": True,
        "lockoutMaxAttempts": 5,
        "lockoutDuration": 30,              # minutes
        "lockoutIpLockoutThreshold": 2,     # distinct locked accounts per IP
        "lockoutNotificationEmail": "",
        "require2FA": False,
        "sessionTimeout": 3600,             # seconds
        "sessionTimeoutWarning": 300,       # seconds
        "sessionMaxConcurrent": 10,
        "sessionSuspiciousActivityEnabled": True,
        "sessionAutoLogoutOnTimeout": True,
        "minPasswordLength": 8,
        "passwordRequireUppercase": False,
        "passwordRequireLowercase": False,
        "passwordRequireNumber": False,
        "passwordRequireSpecialChar": False,
        "passwordHistoryCount": 0,
        "passwordExpirationDays": 0,        # 0 = never
    }

    # Basic app settings
    DEBUG = False
    TESTING = False


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    ENABLE_BACKGROUND_SWEEPS = False
    BCRYPT_ROUNDS = 4
    SMTP_HOST = "smtp.test.local"
    SMTP_FROM_EMAIL = "noreply@test.local"
