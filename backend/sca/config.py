# backend/sca/config.py
import os
from pathlib import Path
from typing import List, Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    # Database
    MONGODB_URL: str = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "sca")

    # Authentication
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "change-me")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

    # Key used to encrypt enc_* resource config entries at rest
    ENCRYPTION_KEY: Optional[str] = os.getenv("SCA_ENCRYPTION_KEY")

    # Resource-type / service catalog
    CATALOG_PATH: Path = Path(os.getenv("SCA_CATALOG_PATH", "./catalog.json"))

    # Progress service
    PROGRESS_API_URL: Optional[str] = os.getenv("PROGRESS_API_URL")
    PROGRESS_API_TOKEN: Optional[str] = os.getenv("PROGRESS_API_TOKEN")

    # Task handler
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
    RUN_POLLER: bool = _env_bool("RUN_POLLER")

    # Remote access
    LS_TIMEOUT_SECONDS: float = float(os.getenv("LS_TIMEOUT_SECONDS", "4"))
    SSH_KNOWN_HOSTS: Optional[str] = os.getenv("SSH_KNOWN_HOSTS")

    # API
    PROJECT_NAME: str = "SCA Core API"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS
    ALLOWED_ORIGINS: List[str] = os.getenv(
        "ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:8080"
    ).split(",")

    def __init__(self):
        if self.ENCRYPTION_KEY is None:
            # Fall back to a key derived from the JWT secret
            self.ENCRYPTION_KEY = self.JWT_SECRET_KEY


settings = Settings()
