import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to app.py as insureportal.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "insureportal.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Schema is owned by migrations; tests flip this on
    CREATE_TABLES_ON_START = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "insureportal_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 20 minutes
    IDLE_TIMEOUT_SECONDS = 20 * 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = False  # set True when using HTTPS

    # Brute-force protection (per account)
    MAX_LOGIN_ATTEMPTS = 5
    LOCKOUT_MINUTES = 15

    # IP auto-block after repeated failures from one address or against one email
    IP_FAILURE_WINDOW_MINUTES = 30
    IP_FAILURE_THRESHOLD = 5
    IP_BLOCK_HOURS = 24

    # Simple IP rate limit for login endpoint
    LOGIN_RATE_WINDOW_SECONDS = 60
    LOGIN_RATE_MAX_REQUESTS = 15

    # Registration code sends per email
    REGISTRATION_CODE_RATE_MAX = 3
    REGISTRATION_CODE_RATE_WINDOW_SECONDS = 15 * 60

    # Password policy
    PASSWORD_MIN_LEN = 12
    PASSWORD_MAX_BYTES = 72             # bcrypt input ceiling, UTF-8 bytes
    PASSWORD_HISTORY_COUNT = 2          # block last 2 passwords
    PASSWORD_MAX_AGE_DAYS = 30          # fixed rotation interval
    PASSWORD_EXPIRY_REMINDER_DAYS = 7   # reminder window before rotation
    TEMP_PASSWORD_PREFIX = "CNAM_"

    # One-time codes (email OTP + registration codes)
    OTP_LENGTH = 6
    OTP_TTL_SECONDS = 10 * 60           # fixed, 10 minutes
    OTP_MAX_ATTEMPTS = 5
    OTP_PEPPER = os.getenv("OTP_PEPPER", "dev-otp-pepper")

    # Authenticator apps
    TOTP_ISSUER = os.getenv("TOTP_ISSUER", "CNAM")
    TOTP_VALID_WINDOW = 1               # +/- one 30s step

    # Half-finished logins waiting on MFA or rotation
    LOGIN_CHALLENGE_TTL_SECONDS = 15 * 60

    # Direct account creation by one admin
    ACCOUNT_CREATE_RATE_MAX = 10
    ACCOUNT_CREATE_RATE_WINDOW_SECONDS = 60

    # Roles that always need a second factor
    MFA_ENFORCED_ROLES = ("admin_superieur", "admin", "security_engineer")
    # True asks every account for a second factor at sign in
    MFA_REQUIRED_FOR_ALL = os.getenv("MFA_REQUIRED_FOR_ALL", "false").lower() == "true"

    # admin / it_engineer applicants must use this domain
    INSTITUTIONAL_EMAIL_DOMAIN = os.getenv("INSTITUTIONAL_EMAIL_DOMAIN", "esprim.tn")

    # Evidence documents uploaded with registration requests
    EVIDENCE_STORAGE_DIR = os.getenv("EVIDENCE_STORAGE_DIR", os.path.join(BASE_DIR, "evidence"))
    EVIDENCE_MAX_BYTES = 10 * 1024 * 1024
    EVIDENCE_ALLOWED_TYPES = {
        "application/pdf": ".pdf",
        "image/jpeg": ".jpg",
        "image/png": ".png",
        "image/webp": ".webp",
    }
    EVIDENCE_URL_TTL_SECONDS = 300

    # Portal URL (used in welcome / decision emails)
    PORTAL_LOGIN_URL = os.getenv("PORTAL_LOGIN_URL")

    # Comma separated list of SOC mailboxes for high/critical events
    SECURITY_ALERT_RECIPIENTS = [
        a.strip() for a in os.getenv("SECURITY_ALERT_RECIPIENTS", "").split(",") if a.strip()
    ]

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    # Basic app settings
    DEBUG = False
