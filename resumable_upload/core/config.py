"""
Configuration settings for the upload client and the reference backend
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

MIB = 1024 * 1024


class Settings:
    """Application settings"""

    # Remote collaborator
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8000")

    # Chunking / transport
    CHUNK_SIZE: int = int(os.getenv("CHUNK_SIZE", str(4 * MIB)))  # 4MB
    MAX_CONCURRENCY: int = int(os.getenv("MAX_CONCURRENCY", "3"))
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "1.0"))  # seconds
    CHUNK_TIMEOUT: float = float(os.getenv("CHUNK_TIMEOUT", "60"))  # 1 minute per chunk
    COMPLETE_TIMEOUT: float = float(os.getenv("COMPLETE_TIMEOUT", "300"))  # 5 minutes for merging
    HASH_ALGORITHM: str = os.getenv("HASH_ALGORITHM", "md5")

    # Local resume state
    RESUME_DB_URL: str = os.getenv(
        "RESUME_DB_URL",
        f"sqlite:///{Path.home() / '.resumable_upload' / 'sessions.db'}"
    )
    SESSION_LEASE_SECONDS: int = int(os.getenv("SESSION_LEASE_SECONDS", "600"))

    # Reference backend
    TEMP_UPLOAD_DIR: str = os.getenv("TEMP_UPLOAD_DIR", "/tmp/uploads")
    COMPLETED_UPLOAD_DIR: str = os.getenv("COMPLETED_UPLOAD_DIR", "/tmp/uploads/completed")
    MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(100 * MIB)))
    SESSION_TTL_HOURS: int = int(os.getenv("SESSION_TTL_HOURS", "24"))
    SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
    SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Application
    APP_TITLE: str = "Resumable Upload API"
    APP_DESCRIPTION: str = "Chunked upload backend with integrity checks and resumable sessions"
    APP_VERSION: str = "1.0.0"


settings = Settings()
