"""
Configuration management for the element library sync engine
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Production backend (project catalog, personal library, registration)
    STUDIO_API_URL: str = os.getenv("STUDIO_API_URL", "http://localhost:8000")
    STUDIO_API_TIMEOUT: float = float(os.getenv("STUDIO_API_TIMEOUT", "30"))
    STUDIO_API_MAX_RETRIES: int = int(os.getenv("STUDIO_API_MAX_RETRIES", "3"))

    # Element registration polling
    # The register endpoint is idempotent: the same POST creates the job and
    # reports its status, so polling just re-issues it.
    ELEMENT_REGISTRATION_MAX_ATTEMPTS: int = int(os.getenv("ELEMENT_REGISTRATION_MAX_ATTEMPTS", "20"))
    ELEMENT_REGISTRATION_INTERVAL: float = float(os.getenv("ELEMENT_REGISTRATION_INTERVAL", "3.0"))  # seconds
    # Options: "fixed" or "exponential"
    ELEMENT_REGISTRATION_BACKOFF: str = os.getenv("ELEMENT_REGISTRATION_BACKOFF", "fixed")
    ELEMENT_REGISTRATION_MAX_INTERVAL: float = float(os.getenv("ELEMENT_REGISTRATION_MAX_INTERVAL", "30.0"))

    # Cloud Storage Configuration
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "s3")  # Options: "firebase" or "s3"
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "")

    # Firebase Storage (Google Cloud Storage)
    FIREBASE_CREDENTIALS_PATH: str = os.getenv("FIREBASE_CREDENTIALS_PATH", "")

    # AWS S3 Configuration
    AWS_ACCESS_KEY_ID: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    # Optional override for the public URL prefix of uploaded objects (e.g. a CDN)
    STORAGE_PUBLIC_URL: Optional[str] = os.getenv("STORAGE_PUBLIC_URL", None)

    def validate_storage_config(self) -> None:
        """
        Validate storage configuration before building a backend.
        Raises ValueError if the selected backend lacks required settings.
        """
        if not self.STORAGE_BUCKET:
            raise ValueError("STORAGE_BUCKET is required for element image uploads")
        if self.STORAGE_BACKEND == "firebase" and not self.FIREBASE_CREDENTIALS_PATH:
            raise ValueError("FIREBASE_CREDENTIALS_PATH is required when STORAGE_BACKEND=firebase")

    @property
    def studio_api_base_url(self) -> str:
        """Backend URL without a trailing slash"""
        return self.STUDIO_API_URL.rstrip("/")


# Global settings instance
settings = Settings()
