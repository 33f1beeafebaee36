import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import quote_plus
from dotenv import load_dotenv

load_dotenv()


def _split_csv(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("PORT", os.getenv("API_PORT", "5000")))

    # Database settings
    db_user: Optional[str] = os.getenv("DB_USER")
    db_pass: Optional[str] = os.getenv("DB_PASS")
    db_host: str = os.getenv("DB_HOST", "cluster0.wmzdc.mongodb.net")
    mongodb_uri: Optional[str] = os.getenv("MONGODB_URI")
    database_name: str = os.getenv("DB_NAME", "booksPortal")
    database_timeout_ms: int = int(os.getenv("DB_TIMEOUT_MS", "5000"))

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_days: int = int(os.getenv("JWT_EXPIRATION_DAYS", "365"))
    session_cookie_name: str = os.getenv("SESSION_COOKIE_NAME", "token")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Book Lending Server")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    environment: str = os.getenv("NODE_ENV", os.getenv("ENVIRONMENT", "development"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    cors_origins: List[str] = field(default_factory=lambda: _split_csv(
        os.getenv("CORS_ORIGINS", "http://localhost:5173,https://shelf-bookm.netlify.app")
    ))

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def database_url(self) -> str:
        """Explicit MONGODB_URI wins; otherwise build the Atlas URI from credentials."""
        if self.mongodb_uri:
            return self.mongodb_uri
        if self.db_user and self.db_pass:
            user = quote_plus(self.db_user)
            password = quote_plus(self.db_pass)
            return (
                f"mongodb+srv://{user}:{password}@{self.db_host}/"
                "?retryWrites=true&w=majority&appName=Cluster0"
            )
        return "mongodb://localhost:27017/"


settings = Settings()


def configure_logging() -> None:
    """Root logging setup; a no-op when handlers are already installed."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
