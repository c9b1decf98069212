"""
Logging configuration with automatic sensitive data redaction.

CV payloads carry personal data (names, emails, phone numbers) and the
worker talks to the extraction service with a bearer token, so every
structured log event passes through the redactor before rendering.
"""

import logging
import re
import sys
from typing import Any, Dict, List, Set
import structlog
from structlog.stdlib import LoggerFactory

from cv_pipeline.core.config import settings


class SensitiveDataRedactor:
    """
    Redacts sensitive data from log entries.

    Handles:
    - Exact key matches (password, token, secret, etc.)
    - Pattern-based key matches (contains 'password', 'token', etc.)
    - Nested dictionaries and lists
    - Partial redaction (email domain preserved, last 4 digits of phones)
    """

    # Keys that should be fully redacted (exact match, case-insensitive)
    FULLY_REDACTED_KEYS: Set[str] = {
        "password",
        "secret",
        "private_key",
        "access_token",
        "refresh_token",
        "bearer_token",
        "jwt",
        "jwt_secret",
        "jwt_token",
        "auth_token",
        "authorization",
        "cookie",
        "session_id",
        "python_api_token",
        "internal_api_secret",
        "signature",
        "x-internal-signature",
        "openai_api_key",
        "anthropic_api_key",
        "extracted_text",
    }

    # Key patterns that should be fully redacted (substring match)
    REDACTED_KEY_PATTERNS: List[str] = [
        "password",
        "secret",
        "token",
        "credential",
        "private_key",
    ]

    # Keys that should be partially redacted (show last N chars or domain)
    PARTIALLY_REDACTED_KEYS: Set[str] = {
        "email",
        "email_address",
        "phone",
        "phone_number",
        "ip_address",
        "client_ip",
    }

    VALUE_PATTERNS = {
        "jwt": re.compile(r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*"),
        "bearer": re.compile(r"Bearer\s+[a-zA-Z0-9._-]+", re.IGNORECASE),
    }

    REDACTED_PLACEHOLDER = "[REDACTED]"

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._fully_redacted_lower = {k.lower() for k in self.FULLY_REDACTED_KEYS}
        self._partially_redacted_lower = {
            k.lower() for k in self.PARTIALLY_REDACTED_KEYS
        }

    def redact(self, data: Any, key: str = None) -> Any:
        """
        Recursively redact sensitive data.

        Args:
            data: The data to redact (can be dict, list, or primitive)
            key: The key name if this data is a value in a dict

        Returns:
            Redacted version of the data
        """
        if not self.enabled or data is None:
            return data

        if key:
            key_lower = key.lower()

            if key_lower in self._fully_redacted_lower:
                return self.REDACTED_PLACEHOLDER

            for pattern in self.REDACTED_KEY_PATTERNS:
                # token counts are not secrets
                if pattern == "token" and "tokens" in key_lower:
                    continue
                if pattern in key_lower:
                    return self.REDACTED_PLACEHOLDER

            if key_lower in self._partially_redacted_lower:
                return self._partial_redact(data, key_lower)

        if isinstance(data, dict):
            return {k: self.redact(v, k) for k, v in data.items()}

        if isinstance(data, (list, tuple)):
            return [self.redact(item) for item in data]

        if isinstance(data, str):
            return self._redact_string_value(data)

        return data

    def _partial_redact(self, value: Any, key_type: str) -> str:
        """Partially redact a value, preserving some information for debugging."""
        value_str = str(value)
        if not value_str:
            return value_str

        # Email: show domain only
        if "email" in key_type:
            if "@" in value_str:
                return f"***@{value_str.split('@')[-1]}"
            return "***"

        # IP address: show first octet only
        if "ip" in key_type:
            parts = value_str.split(".")
            if len(parts) == 4:
                return f"{parts[0]}.***.***"
            return "***"

        # Phone: show last 4 digits
        if "phone" in key_type:
            digits = re.sub(r"\D", "", value_str)
            if len(digits) > 4:
                return f"***{digits[-4:]}"
            return "****"

        if len(value_str) > 4:
            return f"****{value_str[-4:]}"
        return "****"

    def _redact_string_value(self, value: str) -> str:
        """Check string values for sensitive patterns and redact them."""
        if not value or len(value) < 10:
            return value

        result = self.VALUE_PATTERNS["jwt"].sub("[JWT_REDACTED]", value)
        result = self.VALUE_PATTERNS["bearer"].sub("Bearer [REDACTED]", result)
        return result


def sensitive_data_redactor_processor(
    logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Structlog processor that redacts sensitive data before rendering."""
    return _redactor.redact(event_dict)


def setup_logging() -> None:
    """Setup structured logging with automatic sensitive data redaction."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sensitive_data_redactor_processor,
            structlog.processors.JSONRenderer()
            if settings.LOG_FORMAT == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    )

    # Set specific loggers to reduce noise
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger"""
    return structlog.get_logger(name)


def log_security_event(
    event_type: str,
    user_id: str = None,
    ip_address: str = None,
    details: Dict[str, Any] = None,
    **kwargs: Any,
) -> None:
    """Log security event"""
    logger = get_logger("security")

    log_data = {
        "event_type": event_type,
        "user_id": user_id,
        "ip_address": ip_address,
        "details": details or {},
        **kwargs,
    }

    logger.warning("Security event", **log_data)


def log_pipeline_event(
    extraction_id: str,
    event_type: str,
    tenant_id: str = None,
    **kwargs: Any,
) -> None:
    """Log a CV pipeline state change"""
    logger = get_logger("cv_pipeline.events")
    logger.info(
        "Pipeline event",
        extraction_id=extraction_id,
        event_type=event_type,
        tenant_id=tenant_id,
        **kwargs,
    )


# Global redactor instance for manual use
_redactor = SensitiveDataRedactor()


def redact_sensitive_data(data: Any) -> Any:
    """
    Manually redact sensitive data from any data structure.

    Example:
        >>> redact_sensitive_data({"email": "jane@example.com", "password": "x"})
        {'email': '***@example.com', 'password': '[REDACTED]'}
    """
    return _redactor.redact(data)
