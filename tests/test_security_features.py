from __future__ import annotations

import os
import unittest
from datetime import timedelta
from unittest.mock import patch

from horarios.errors import ApiError
from horarios.security import (
    LoginThrottle,
    create_access_token,
    decode_token,
    full_permissions,
    has_permission,
    hash_password,
    normalize_permissions,
    verify_admin_credentials,
)
from horarios.settings import get_settings


class SecurityFeatureTests(unittest.TestCase):
    def setUp(self) -> None:
        get_settings.cache_clear()

    def tearDown(self) -> None:
        get_settings.cache_clear()

    def test_write_permission_implies_read(self) -> None:
        normalized = normalize_permissions(
            {
                "schedule": {"write": True},
                "shifts": True,
                "audit": {"read": True, "write": False},
                "unknown": {"read": True},
            }
        )

        self.assertEqual(normalized["schedule"], {"read": True, "write": True})
        self.assertEqual(normalized["shifts"], {"read": True, "write": True})
        self.assertEqual(normalized["audit"], {"read": True, "write": False})
        self.assertEqual(normalized["attendance"], {"read": False, "write": False})
        self.assertNotIn("unknown", normalized)
        self.assertEqual(normalize_permissions(None)["absence_notes"], {"read": False, "write": False})

    def test_has_permission_respects_claims(self) -> None:
        claims = {
            "username": "planner",
            "permissions": {"schedule": {"read": True, "write": False}},
        }

        self.assertTrue(has_permission(claims, "schedule"))
        self.assertFalse(has_permission(claims, "schedule", write=True))
        self.assertFalse(has_permission(claims, "absence_notes"))
        self.assertFalse(has_permission(claims, "payroll"))
        self.assertTrue(has_permission({"username": "boss", "is_super_admin": True}, "audit", write=True))

    def test_environment_admin_has_every_permission(self) -> None:
        with patch.dict(os.environ, {"ADMIN_USER": "root-admin"}, clear=False):
            get_settings.cache_clear()
            self.assertTrue(has_permission({"username": "root-admin"}, "shifts", write=True))
            self.assertFalse(has_permission({"username": "someone-else"}, "shifts", write=True))

    def test_access_token_roundtrip(self) -> None:
        with patch.dict(os.environ, {"JWT_SECRET": "jwt-test-secret"}, clear=False):
            get_settings.cache_clear()
            token, expires_in, claims = create_access_token(
                sub="planner",
                username="planner",
                permissions={"schedule": {"write": True}},
            )
            decoded = decode_token(token)

        self.assertEqual(expires_in, 30 * 60)
        self.assertEqual(decoded["sub"], "planner")
        self.assertEqual(decoded["typ"], "access")
        self.assertEqual(decoded["permissions"]["schedule"], {"read": True, "write": True})
        self.assertEqual(decoded["jti"], claims["jti"])

    def test_token_signed_with_another_secret_is_rejected(self) -> None:
        with patch.dict(os.environ, {"JWT_SECRET": "first-secret"}, clear=False):
            get_settings.cache_clear()
            token, _expires_in, _claims = create_access_token(sub="planner", username="planner")

        with patch.dict(os.environ, {"JWT_SECRET": "second-secret"}, clear=False):
            get_settings.cache_clear()
            with self.assertRaises(ApiError) as exc:
                decode_token(token)

        self.assertEqual(exc.exception.status_code, 401)
        self.assertEqual(exc.exception.code, "INVALID_TOKEN")

    def test_admin_credentials_are_checked_against_bcrypt_hash(self) -> None:
        password_hash = hash_password("s3cret-pass")
        with patch.dict(
            os.environ,
            {"ADMIN_USER": "admin", "ADMIN_PASS_HASH": f"'{password_hash}'"},
            clear=False,
        ):
            get_settings.cache_clear()
            self.assertTrue(verify_admin_credentials("admin", "s3cret-pass"))
            self.assertFalse(verify_admin_credentials("admin", "wrong"))
            self.assertFalse(verify_admin_credentials("other", "s3cret-pass"))

    def test_full_permissions_cover_every_area(self) -> None:
        permissions = full_permissions()

        self.assertEqual(set(permissions), {"shifts", "schedule", "attendance", "absence_notes", "audit"})
        self.assertTrue(all(item == {"read": True, "write": True} for item in permissions.values()))

    def test_login_throttle_blocks_after_repeated_failures(self) -> None:
        throttle = LoginThrottle(max_attempts=3, window=timedelta(minutes=10))
        for _ in range(3):
            throttle.ensure_allowed("10.0.0.1")
            throttle.register_failure("10.0.0.1")

        with self.assertRaises(ApiError) as exc:
            throttle.ensure_allowed("10.0.0.1")
        self.assertEqual(exc.exception.status_code, 429)

        throttle.ensure_allowed("10.0.0.2")
        throttle.register_success("10.0.0.1")
        throttle.ensure_allowed("10.0.0.1")


if __name__ == "__main__":
    unittest.main()
