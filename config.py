import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw else default
    except (TypeError, ValueError):
        return default


class Settings:
    """Runtime settings read once from the environment (and `.env`)."""

    def __init__(self):
        self.environment = (os.getenv("ENVIRONMENT") or "production").strip().lower()
        self.frontend_url = (os.getenv("FRONTEND_URL") or "http://localhost:3000").strip()
        self.port = _int_env("PORT", 4000)

        self.database_url = os.getenv("DATABASE_URL")
        self.database_name = os.getenv("DATABASE_NAME", "nilhub")

        self.jwt_secret = os.getenv("JWT_SECRET", "change-this-secret")
        self.jwt_expire_days = _int_env("JWT_EXPIRE_DAYS", 30)

        self.cloudinary_cloud_name = os.getenv("CLOUDINARY_CLOUD_NAME")
        self.cloudinary_api_key = os.getenv("CLOUDINARY_API_KEY")
        self.cloudinary_api_secret = os.getenv("CLOUDINARY_API_SECRET")
        self.upload_folder = os.getenv("UPLOAD_FOLDER", "nilhub/productos")

        self.resend_api_key = (os.getenv("RESEND_API_KEY") or "").strip()
        self.mail_from = os.getenv("MAIL_FROM", "NilHub - Catálogos Virtuales <no-reply@nilhub.app>")

        self.whatsapp_enabled = (os.getenv("WHATSAPP_ENABLED") or "").strip().lower() in ("1", "true", "yes")
        self.whatsapp_gateway_url = (os.getenv("WHATSAPP_GATEWAY_URL") or "http://localhost:3001").rstrip("/")
        self.whatsapp_session = os.getenv("WHATSAPP_SESSION", "default")
        self.whatsapp_api_key = os.getenv("WHATSAPP_API_KEY")
        self.whatsapp_default_country = os.getenv("WHATSAPP_DEFAULT_COUNTRY", "51")

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


settings = Settings()
