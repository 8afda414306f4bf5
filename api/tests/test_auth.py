"""Tests for host session tokens, RBAC tables and the JSON log formatter."""

from __future__ import annotations

import json
import logging

import pytest
from api.middleware.auth import InvalidSessionToken, sign_session_token, verify_session_token
from api.middleware.json_formatter import JSONFormatter
from api.middleware.rbac import Permission, Role, parse_role, role_has_permission

_SECRET = "unit-test-secret"


def _claims(**overrides) -> dict:
    claims = {"sub": "host@acme", "tenant_id": "t-1", "role": "staff", "exp": 2_000_000_000}
    claims.update(overrides)
    return claims


class TestSessionToken:
    def test_round_trip(self):
        claims = verify_session_token(sign_session_token(_claims(), _SECRET), _SECRET, now=1_000)
        assert claims.tenant_id == "t-1"
        assert claims.role == "staff"

    def test_wrong_secret(self):
        with pytest.raises(InvalidSessionToken, match="bad signature"):
            verify_session_token(sign_session_token(_claims(), _SECRET), "other", now=1_000)

    def test_expired(self):
        with pytest.raises(InvalidSessionToken, match="expired"):
            verify_session_token(sign_session_token(_claims(exp=999), _SECRET), _SECRET, now=1_000)

    def test_missing_tenant_claim(self):
        claims = _claims()
        del claims["tenant_id"]
        with pytest.raises(InvalidSessionToken, match="invalid claims"):
            verify_session_token(sign_session_token(claims, _SECRET), _SECRET, now=1_000)

    @pytest.mark.parametrize("token", ["", "gbs.only-two", "jwt.a.b", "gbs.a.b.c"])
    def test_malformed(self, token):
        with pytest.raises(InvalidSessionToken):
            verify_session_token(token, _SECRET, now=1_000)


class TestRoles:
    def test_parse_is_case_insensitive(self):
        assert parse_role(" Owner ") is Role.OWNER

    def test_unknown_role(self):
        with pytest.raises(ValueError):
            parse_role("admin")

    @pytest.mark.parametrize(
        ("role", "permission", "allowed"),
        [
            (Role.VIEWER, Permission.READ_ORDERS, True),
            (Role.VIEWER, Permission.TRANSITION_ORDERS, False),
            (Role.STAFF, Permission.TRANSITION_ORDERS, True),
            (Role.STAFF, Permission.CANCEL_ORDERS, False),
            (Role.STAFF, Permission.READ_NOTIFICATIONS, True),
            (Role.OWNER, Permission.CANCEL_ORDERS, True),
            (Role.OWNER, Permission.RELEASE_IDEMPOTENCY, True),
        ],
    )
    def test_permission_table(self, role, permission, allowed):
        assert role_has_permission(role, permission) is allowed


class TestJSONFormatter:
    def _record(self, name: str, **extra) -> logging.LogRecord:
        record = logging.LogRecord(
            name=name, level=logging.WARNING, pathname="x.py", lineno=1, msg="hello %s", args=("world",), exc_info=None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_single_line_with_context(self):
        output = JSONFormatter().format(self._record("api.access", request_id="r-1", request={"status_code": 200}))

        assert "\n" not in output
        data = json.loads(output)
        assert data["message"] == "hello world"
        assert data["request_id"] == "r-1"
        assert data["request"] == {"status_code": 200}
        assert "security" not in data

    def test_security_records_are_flagged(self):
        data = json.loads(JSONFormatter().format(self._record("groupbuy.security")))
        assert data["security"] is True
