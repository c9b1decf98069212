"""
Security utilities for authentication

- Tenant users: JWT bearer tokens carrying ``sub`` and ``tenant_id``
- Internal services: HMAC-SHA256 request signatures

Internal requests carry three headers:

    X-Internal-Service:   calling service name (logged)
    X-Internal-Timestamp: Unix time in milliseconds
    X-Internal-Signature: hex HMAC-SHA256 of "<METHOD>:<path>:<timestamp>"

The timestamp must be within INTERNAL_AUTH_MAX_SKEW_SECONDS of server time.
"""

import hashlib
import hmac
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from cv_pipeline.core.config import settings
from cv_pipeline.core.logging import log_security_event
from cv_pipeline.utils.exceptions import AuthenticationError, TenantError

logger = logging.getLogger(__name__)

ALLOWED_ALGORITHMS = ["HS256", "HS384", "HS512"]

INTERNAL_SERVICE_HEADER = "X-Internal-Service"
INTERNAL_TIMESTAMP_HEADER = "X-Internal-Timestamp"
INTERNAL_SIGNATURE_HEADER = "X-Internal-Signature"

# auto_error=False so a missing header is reported as our own 401
security = HTTPBearer(auto_error=False)


def create_access_token(
    data: Dict[str, Any], expires_delta: Optional[timedelta] = None
) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    """
    Verify JWT token and return payload.

    Only HMAC algorithms are accepted, and only the configured one.
    """
    if settings.JWT_ALGORITHM not in ALLOWED_ALGORITHMS:
        logger.error(
            f"JWT_ALGORITHM '{settings.JWT_ALGORITHM}' is not in allowlist. "
            f"Allowed algorithms: {ALLOWED_ALGORITHMS}"
        )
        raise AuthenticationError("Server configuration error")

    try:
        header = jwt.get_unverified_header(token)
    except JWTError:
        raise AuthenticationError("Invalid token")
    token_alg = (header.get("alg") or "").upper()
    if token_alg not in ALLOWED_ALGORITHMS:
        logger.warning(f"Token uses disallowed algorithm: {token_alg or 'none'}")
        raise AuthenticationError("Invalid token algorithm")

    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require_exp": True, "require_sub": True},
        )
    except JWTError as e:
        logger.warning(f"Token verification failed: {e}")
        raise AuthenticationError("Invalid token")


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict[str, Any]:
    """
    Get the caller from the bearer token.

    Raises:
        AuthenticationError: missing or invalid token
        TenantError: valid token without a tenant_id claim
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError()

    payload = verify_token(credentials.credentials)
    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationError("Invalid token payload")

    tenant_id = payload.get("tenant_id")
    if not tenant_id:
        raise TenantError("Token carries no tenant")

    return {
        "id": str(user_id),
        "tenant_id": str(tenant_id),
        "email": payload.get("email"),
        "role": payload.get("role", "user"),
    }


def compute_internal_signature(
    method: str, path: str, timestamp: str, secret: Optional[str] = None
) -> str:
    payload = f"{method.upper()}:{path}:{timestamp}"
    key = (secret or settings.INTERNAL_API_SECRET or "").encode()
    return hmac.new(key, payload.encode(), hashlib.sha256).hexdigest()


def sign_internal_request(
    method: str,
    path: str,
    service: str = None,
    timestamp_ms: Optional[int] = None,
    secret: Optional[str] = None,
) -> Dict[str, str]:
    """Headers for a signed internal request (used by callers and tests)."""
    timestamp = str(timestamp_ms if timestamp_ms is not None else int(time.time() * 1000))
    return {
        INTERNAL_SERVICE_HEADER: service or settings.SERVICE_NAME,
        INTERNAL_TIMESTAMP_HEADER: timestamp,
        INTERNAL_SIGNATURE_HEADER: compute_internal_signature(method, path, timestamp, secret),
    }


def _reject(request: Request, reason: str, service: Optional[str]) -> AuthenticationError:
    log_security_event(
        "internal_auth_rejected",
        ip_address=request.client.host if request.client else None,
        details={"reason": reason, "service": service, "path": request.url.path},
    )
    return AuthenticationError(reason)


async def verify_internal_request(request: Request) -> str:
    """
    FastAPI dependency for the internal routes.

    Returns:
        The calling service name
    """
    service = request.headers.get(INTERNAL_SERVICE_HEADER)
    timestamp = request.headers.get(INTERNAL_TIMESTAMP_HEADER)
    signature = request.headers.get(INTERNAL_SIGNATURE_HEADER)

    if not service:
        raise _reject(request, f"Missing {INTERNAL_SERVICE_HEADER} header", service)
    if not settings.INTERNAL_API_SECRET:
        logger.error("INTERNAL_API_SECRET is not configured, rejecting internal request")
        raise _reject(request, "Internal authentication is not configured", service)
    if not timestamp or not signature:
        raise _reject(request, "Missing internal request signature", service)

    try:
        timestamp_ms = int(timestamp)
    except ValueError:
        raise _reject(request, "Invalid internal request timestamp", service)

    skew_ms = abs(int(time.time() * 1000) - timestamp_ms)
    if skew_ms > settings.INTERNAL_AUTH_MAX_SKEW_SECONDS * 1000:
        raise _reject(request, "Internal request timestamp outside allowed window", service)

    expected = compute_internal_signature(request.method, request.url.path, timestamp)
    if not hmac.compare_digest(signature.lower(), expected):
        raise _reject(request, "Invalid internal request signature", service)

    logger.debug(f"Internal request from {service}: {request.method} {request.url.path}")
    return service
