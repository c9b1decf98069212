"""
Configuration settings for the application
"""

import os
import sys
from typing import List, Optional
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = os.getenv("APP_NAME", "HR Platform CV Pipeline")
    APP_DEBUG: bool = os.getenv("APP_DEBUG", "False").lower() == "true"
    APP_ENV: str = os.getenv("APP_ENV", "development")
    APP_LOG_LEVEL: str = os.getenv("APP_LOG_LEVEL", "INFO")
    APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    API_PREFIX: str = os.getenv("API_PREFIX", "/api")

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./data/cv_pipeline.db")

    # Security
    JWT_SECRET: Optional[str] = os.getenv("JWT_SECRET")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(
        os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440")
    )  # 24 hours

    # Service-to-service authentication (HMAC over method:path:timestamp)
    INTERNAL_API_SECRET: Optional[str] = os.getenv("INTERNAL_API_SECRET")
    INTERNAL_AUTH_MAX_SKEW_SECONDS: int = int(
        os.getenv("INTERNAL_AUTH_MAX_SKEW_SECONDS", "300")
    )  # 5 minutes

    # CORS origins
    CORS_ORIGINS: List[str] = ["*"]

    # Extraction Service (external CV analyzer)
    PYTHON_API_URL: str = os.getenv("PYTHON_API_URL", "http://localhost:8001/api")
    PYTHON_API_TOKEN: Optional[str] = os.getenv("PYTHON_API_TOKEN")
    SERVICE_NAME: str = os.getenv("SERVICE_NAME", "hr-backend")
    # "sync": result returned inline, "async": the service writes results back itself
    CV_EXTRACTION_MODE: str = os.getenv("CV_EXTRACTION_MODE", "sync")
    CV_EXTRACTION_SYNC_TIMEOUT_SECONDS: float = float(
        os.getenv("CV_EXTRACTION_SYNC_TIMEOUT_SECONDS", "480")
    )  # 8 minutes
    CV_EXTRACTION_ASYNC_TIMEOUT_SECONDS: float = float(
        os.getenv("CV_EXTRACTION_ASYNC_TIMEOUT_SECONDS", "30")
    )

    # CV blob storage
    # CV_STORAGE_MODE=production or RAILWAY_ENVIRONMENT=production forces the volume
    CV_STORAGE_MODE: Optional[str] = os.getenv("CV_STORAGE_MODE")
    RAILWAY_ENVIRONMENT: Optional[str] = os.getenv("RAILWAY_ENVIRONMENT")
    CV_STORAGE_VOLUME_PATH: str = os.getenv("CV_STORAGE_VOLUME_PATH", "/cv-storage")
    CV_STORAGE_LOCAL_DIR: str = os.getenv("CV_STORAGE_LOCAL_DIR", "temp_uploads")
    CV_MAX_UPLOAD_SIZE: int = int(os.getenv("CV_MAX_UPLOAD_SIZE", "10485760"))  # 10MB

    # Background worker
    CV_WORKER_ENABLED: bool = True
    CV_WORKER_POLL_INTERVAL_SECONDS: float = float(
        os.getenv("CV_WORKER_POLL_INTERVAL_SECONDS", "10")
    )
    CV_WORKER_PENDING_BATCH_SIZE: int = int(
        os.getenv("CV_WORKER_PENDING_BATCH_SIZE", "5")
    )
    CV_WORKER_EXTRACTED_BATCH_SIZE: int = int(
        os.getenv("CV_WORKER_EXTRACTED_BATCH_SIZE", "10")
    )
    CV_WORKER_MAX_RETRIES: int = int(os.getenv("CV_WORKER_MAX_RETRIES", "3"))
    # Records stuck in "processing" longer than this are failed by the reaper.
    # Unset means twice the synchronous extraction timeout.
    CV_PROCESSING_DEADLINE_SECONDS: Optional[float] = (
        float(os.getenv("CV_PROCESSING_DEADLINE_SECONDS"))
        if os.getenv("CV_PROCESSING_DEADLINE_SECONDS")
        else None
    )

    # LLM audit log
    LLM_AUDIT_ENABLED: bool = True
    LLM_DEFAULT_PROVIDER: str = os.getenv("LLM_DEFAULT_PROVIDER", "openai")

    # Monitoring
    PROMETHEUS_ENABLED: bool = True

    # Logging
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "json")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @field_validator(
        "CV_WORKER_ENABLED", "LLM_AUDIT_ENABLED", "PROMETHEUS_ENABLED", mode="before"
    )
    @classmethod
    def parse_bool(cls, v):
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes")
        return bool(v)

    @field_validator("CV_EXTRACTION_MODE")
    @classmethod
    def validate_extraction_mode(cls, v: str) -> str:
        mode = (v or "sync").lower()
        if mode not in ("sync", "async"):
            raise ValueError("CV_EXTRACTION_MODE must be 'sync' or 'async'")
        return mode

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        # Ignore unknown environment variables to avoid validation errors
        # when optional/deprecated flags are present in .env
        "extra": "ignore",
    }

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() in ("production", "prod")

    @property
    def processing_deadline_seconds(self) -> float:
        """Deadline after which a "processing" record is considered stuck."""
        if self.CV_PROCESSING_DEADLINE_SECONDS:
            return self.CV_PROCESSING_DEADLINE_SECONDS
        return 2 * self.CV_EXTRACTION_SYNC_TIMEOUT_SECONDS

    @property
    def extraction_timeout_seconds(self) -> float:
        if self.CV_EXTRACTION_MODE == "async":
            return self.CV_EXTRACTION_ASYNC_TIMEOUT_SECONDS
        return self.CV_EXTRACTION_SYNC_TIMEOUT_SECONDS

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """
        Validate critical security settings at startup.

        - JWT secret must be present, and long enough in production
        - Internal API secret should be present so the internal routes
          can verify request signatures
        - APP_DEBUG is not allowed in production
        """
        errors = []
        warnings = []

        if self.is_production and self.APP_DEBUG:
            errors.append(
                "SECURITY ERROR: APP_DEBUG=true is not allowed in production. "
                "Set APP_DEBUG=false or APP_ENV to a non-production value."
            )

        if not self.JWT_SECRET:
            errors.append(
                "SECURITY ERROR: JWT_SECRET is required. "
                "Generate a secure random secret of at least 32 characters."
            )
        elif len(self.JWT_SECRET) < 32:
            if self.is_production:
                errors.append(
                    f"SECURITY ERROR: JWT_SECRET is too short ({len(self.JWT_SECRET)} chars). "
                    "Production requires at least 32 characters."
                )
            else:
                warnings.append(
                    f"SECURITY WARNING: JWT_SECRET is short ({len(self.JWT_SECRET)} chars). "
                    "Use at least 32 characters for production."
                )

        if not self.INTERNAL_API_SECRET:
            warnings.append(
                "SECURITY WARNING: INTERNAL_API_SECRET is not set. "
                "Internal routes will reject every request."
            )

        if self.is_production and not self.PYTHON_API_TOKEN:
            warnings.append(
                "SECURITY WARNING: PYTHON_API_TOKEN is not set. "
                "The extraction service will reject worker calls."
            )

        for warning in warnings:
            print(f"\033[93m{warning}\033[0m", file=sys.stderr)

        if errors:
            for error in errors:
                print(f"\033[91m{error}\033[0m", file=sys.stderr)
            raise ValueError(
                "Security validation failed. See above errors. "
                "Fix the configuration before starting the application."
            )

        return self


# Global settings instance
settings = Settings()
