import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: list = field(default_factory=lambda: _split_list(os.getenv("CORS_ORIGINS", "*")))

    # Database settings
    database_file: str = os.getenv("ALBUM_DB_FILE", "albums.db")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "10"))

    # Cover image storage
    images_dir: str = os.getenv("ALBUM_IMAGES_DIR", os.path.join("wwwroot", "images"))
    images_url_path: str = os.getenv("ALBUM_IMAGES_URL_PATH", "/images")
    # Covers replaced by an update are kept on disk unless this is enabled
    delete_replaced_covers: bool = os.getenv("DELETE_REPLACED_COVERS", "False").lower() in ("true", "1", "yes")

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", secret_key)
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "10080"))  # 7 days
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))
    admin_users: list = field(default_factory=lambda: _split_list(os.getenv("ADMIN_USERS", "denny")))
    # X-Current-User is taken at its word when no bearer token is sent;
    # disable to require a token for anything that needs an identity
    trust_requester_header: bool = os.getenv("TRUST_REQUESTER_HEADER", "True").lower() in ("true", "1", "yes")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Album Catalog")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    expose_error_details: bool = os.getenv("EXPOSE_ERROR_DETAILS", str(debug)).lower() in ("true", "1", "yes")


settings = Settings()
