"""
Security tests for JWT verification and internal request signing.

Tests cover:
- JWT creation and verification
- Algorithm allowlist (alg "none" and foreign algorithms rejected)
- Expiry and required claims
- Tenant resolution from the token
- HMAC signatures for service-to-service calls
"""
import base64
import json
from datetime import timedelta

import pytest
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from cv_pipeline.core.config import settings
from cv_pipeline.core.security import (
    INTERNAL_SERVICE_HEADER,
    INTERNAL_SIGNATURE_HEADER,
    INTERNAL_TIMESTAMP_HEADER,
    compute_internal_signature,
    create_access_token,
    get_current_user,
    sign_internal_request,
    verify_token,
)
from cv_pipeline.utils.exceptions import AuthenticationError, TenantError

from tests.conftest import TENANT_ID, make_token


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestJWT:

    @pytest.mark.unit
    def test_round_trip(self):
        token = create_access_token({"sub": "42", "tenant_id": TENANT_ID})
        payload = verify_token(token)
        assert payload["sub"] == "42"
        assert payload["tenant_id"] == TENANT_ID
        assert "exp" in payload

    @pytest.mark.unit
    def test_alg_none_rejected(self):
        token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64({'sub': '1', 'tenant_id': TENANT_ID})}."
        with pytest.raises(AuthenticationError):
            verify_token(token)

    @pytest.mark.unit
    def test_other_hmac_algorithm_rejected(self):
        token = jwt.encode(
            {"sub": "1", "exp": 9999999999}, settings.JWT_SECRET, algorithm="HS512"
        )
        with pytest.raises(AuthenticationError):
            verify_token(token)

    @pytest.mark.unit
    def test_wrong_secret_rejected(self):
        token = jwt.encode({"sub": "1", "exp": 9999999999}, "another-secret", algorithm="HS256")
        with pytest.raises(AuthenticationError):
            verify_token(token)

    @pytest.mark.unit
    def test_expired_token_rejected(self):
        token = create_access_token({"sub": "1"}, expires_delta=timedelta(seconds=-30))
        with pytest.raises(AuthenticationError):
            verify_token(token)

    @pytest.mark.unit
    def test_token_without_exp_rejected(self):
        token = jwt.encode({"sub": "1"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
        with pytest.raises(AuthenticationError):
            verify_token(token)

    @pytest.mark.unit
    def test_token_without_sub_rejected(self):
        token = create_access_token({"tenant_id": TENANT_ID})
        with pytest.raises(AuthenticationError):
            verify_token(token)

    @pytest.mark.unit
    def test_garbage_rejected(self):
        with pytest.raises(AuthenticationError):
            verify_token("definitely.not.a-token")


class TestCurrentUser:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_user_carries_tenant(self):
        user = await get_current_user(credentials(make_token(user_id="7", role="hr")))
        assert user == {"id": "7", "tenant_id": TENANT_ID, "email": None, "role": "hr"}

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_missing_credentials(self):
        with pytest.raises(AuthenticationError):
            await get_current_user(None)

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_missing_tenant_claim(self):
        with pytest.raises(TenantError):
            await get_current_user(credentials(make_token(tenant_id=None)))


class TestInternalSignature:

    @pytest.mark.unit
    def test_signature_is_deterministic(self):
        a = compute_internal_signature("POST", "/api/internal/llm-usage-log", "1700000000000", "s3cret")
        b = compute_internal_signature("post", "/api/internal/llm-usage-log", "1700000000000", "s3cret")
        assert a == b
        assert len(a) == 64

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "method,path,timestamp,secret",
        [
            ("GET", "/api/internal/llm-usage-log", "1700000000000", "s3cret"),
            ("POST", "/api/internal/health", "1700000000000", "s3cret"),
            ("POST", "/api/internal/llm-usage-log", "1700000000001", "s3cret"),
            ("POST", "/api/internal/llm-usage-log", "1700000000000", "other"),
        ],
    )
    def test_every_input_changes_the_signature(self, method, path, timestamp, secret):
        reference = compute_internal_signature(
            "POST", "/api/internal/llm-usage-log", "1700000000000", "s3cret"
        )
        assert compute_internal_signature(method, path, timestamp, secret) != reference

    @pytest.mark.unit
    def test_signed_headers(self):
        headers = sign_internal_request("GET", "/api/internal/health", service="billing", timestamp_ms=123)
        assert headers[INTERNAL_SERVICE_HEADER] == "billing"
        assert headers[INTERNAL_TIMESTAMP_HEADER] == "123"
        assert headers[INTERNAL_SIGNATURE_HEADER] == compute_internal_signature(
            "GET", "/api/internal/health", "123"
        )
