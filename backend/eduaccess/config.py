import os
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # API Configuration
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "EduAccess"
    DEBUG: bool = False

    # Database (empty means local SQLite under backend/data)
    DATABASE_URL: str = ""

    # CORS Configuration
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost:3000",  # Default React frontend
        "http://localhost:5173",  # Vite dev server
    ]

    # Security
    SECRET_KEY: str = "change-me-access-secret"
    REFRESH_SECRET_KEY: str = "change-me-refresh-secret"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7  # 7 days

    # Storage
    STORAGE_DRIVER: str = "local"  # local, s3
    UPLOAD_DIR: str = str(BASE_DIR / "uploads")
    S3_BUCKET_NAME: Optional[str] = None
    AWS_REGION: str = "us-east-1"
    AWS_ENDPOINT: Optional[str] = None
    DOWNLOAD_URL_EXPIRES: int = 60 * 60  # 1 hour

    # Upload limits
    MAX_UPLOAD_BYTES: int = 50 * 1024 * 1024  # 50 MiB
    ALLOWED_MIME_TYPES: List[str] = [
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/plain",
        "image/jpeg",
        "image/png",
        "image/gif",
        "video/mp4",
        "audio/mpeg",
        "application/zip",
    ]

    model_config = SettingsConfigDict(case_sensitive=True)


settings = Settings()

# Update CORS origins from environment if present
if os.getenv("CORS_ORIGINS"):
    settings.BACKEND_CORS_ORIGINS = [
        str(origin).strip() for origin in os.getenv("CORS_ORIGINS").split(",")
    ]
