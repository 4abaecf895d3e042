import os

from dotenv import load_dotenv

# Load environment variables from a .env file if present
load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    DATABASE_PATH = os.environ.get("LAB_OPS_DATABASE") or os.path.join(basedir, "instance", "lab_ops.db")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Roles that the workflow checks callers against
    FINANCE_ROLE = os.environ.get("FINANCE_ROLE", "Finance Manager")
    FULFILLMENT_ROLE = os.environ.get("FULFILLMENT_ROLE", "Accounts Clerk")
    ADMIN_ROLE = os.environ.get("ADMIN_ROLE", "Admin")

    # Outbound email. When EMAIL_API_BASE_URL is set, notifications are posted
    # to that service instead of being rendered and sent in-process.
    EMAIL_API_BASE_URL = os.environ.get("EMAIL_API_BASE_URL", "")
    EMAIL_API_TIMEOUT = env_int("EMAIL_API_TIMEOUT", 10)
    SMTP_HOST = os.environ.get("SMTP_HOST", "smtp.gmail.com")
    SMTP_PORT = env_int("SMTP_PORT", 587)
    SMTP_USERNAME = os.environ.get("SMTP_USERNAME", "")
    SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
    SMTP_USE_TLS = env_bool("SMTP_USE_TLS", "true")
    MAIL_SENDER = os.environ.get("MAIL_SENDER", '"Lab Partners Portal" <no-reply@localhost>')
    PORTAL_URL = os.environ.get("PORTAL_URL", "https://app.labpartners.co.zw")

    NOTIFICATION_WORKERS = env_int("NOTIFICATION_WORKERS", 4)

    # WhatsApp through Twilio
    TWILIO_ACCOUNT_SID = os.environ.get("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN", "")
    TWILIO_WHATSAPP_NUMBER = os.environ.get("TWILIO_WHATSAPP_NUMBER", "")

    # Push notifications through Firebase Cloud Messaging. The project id
    # defaults to the one in the service account file.
    FIREBASE_SERVICE_ACCOUNT_PATH = os.environ.get("FIREBASE_SERVICE_ACCOUNT_PATH", "")
    FCM_PROJECT_ID = os.environ.get("FCM_PROJECT_ID", "")

    # Material usage alerts: wastage percentage at which each severity starts
    WASTAGE_THRESHOLDS = {
        "low": env_int("WASTAGE_ALERT_LOW", 10),
        "medium": env_int("WASTAGE_ALERT_MEDIUM", 25),
        "high": env_int("WASTAGE_ALERT_HIGH", 50),
        "critical": env_int("WASTAGE_ALERT_CRITICAL", 100),
    }

    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ORIGINS", "http://localhost:5173,https://app.labpartners.co.zw"
        ).split(",")
        if origin.strip()
    ]
