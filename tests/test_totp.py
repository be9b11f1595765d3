"""
Tests for TOTP generation and verification.

Covers:
- Secret generation and normalization
- RFC 6238 reference values
- Clock drift tolerance
- Malformed input handling
- Provisioning URI and QR code
"""
import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs, unquote, urlparse

import pytest

from backend.app.core.clock import FixedClock
from backend.app.security.errors import ValidationError
from backend.app.security.totp import (
    TotpVerifier,
    generate_qr_code_base64,
    generate_totp_secret,
    get_current_totp,
    get_totp_uri,
    normalize_code,
    normalize_secret,
    time_step,
    verify_totp,
)


def at(unix_seconds):
    return FixedClock(datetime.fromtimestamp(unix_seconds, tz=timezone.utc))


# ============================================
# Secret Tests
# ============================================

class TestSecretGeneration:
    """Test secret generation and normalization."""

    def test_secret_is_160_bits_of_base32(self):
        secret = generate_totp_secret()

        assert len(secret) == 32
        assert set(secret) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")
        assert len(base64.b32decode(secret)) == 20

    def test_secrets_are_unique(self):
        secrets = {generate_totp_secret() for _ in range(50)}
        assert len(secrets) == 50

    def test_normalize_accepts_lowercase_and_spaces(self, secret):
        spaced = " ".join(secret[i:i + 4].lower() for i in range(0, len(secret), 4))
        assert normalize_secret(spaced) == secret

    @pytest.mark.parametrize("bad", ["", "SHORT", "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJ1", "!" * 32])
    def test_normalize_rejects_malformed(self, bad):
        with pytest.raises(ValidationError):
            normalize_secret(bad)


# ============================================
# Code Generation Tests
# ============================================

class TestCodeGeneration:
    """Test code derivation against RFC 6238 appendix B."""

    @pytest.mark.parametrize("unix_seconds,expected", [
        (59, "287082"),
        (1111111109, "081804"),
        (1111111111, "050471"),
        (1234567890, "005924"),
        (2000000000, "279037"),
    ])
    def test_rfc6238_sha1_vectors(self, secret, unix_seconds, expected):
        assert get_current_totp(secret, at(unix_seconds)) == expected

    def test_rfc6238_sha256_vector(self):
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQGEZA"
        verifier = TotpVerifier(digest="sha256")
        assert verifier.current_code(secret, at(59)) == "119246"

    def test_time_step_is_thirty_seconds(self):
        assert time_step(at(0)) == 0
        assert time_step(at(29)) == 0
        assert time_step(at(30)) == 1
        assert time_step(at(1234567890)) == 41152263

    def test_codes_are_six_digits(self, clock):
        for _ in range(20):
            code = get_current_totp(generate_totp_secret(), clock)
            assert len(code) == 6
            assert code.isdigit()


# ============================================
# Verification Tests
# ============================================

class TestVerification:
    """Test verification and drift tolerance."""

    def test_current_code_verifies(self, clock):
        for _ in range(20):
            secret = generate_totp_secret()
            assert verify_totp(secret, get_current_totp(secret, clock), clock)

    def test_other_code_does_not_verify(self, secret, clock, wrong_code):
        assert not verify_totp(secret, wrong_code(secret, clock), clock)

    @pytest.mark.parametrize("start", [1234567860, 1234567875, 1234567889])
    def test_code_survives_29_seconds_of_drift(self, secret, start):
        code = get_current_totp(secret, at(start))

        assert verify_totp(secret, code, at(start + 29))
        assert verify_totp(secret, code, at(start - 29))

    @pytest.mark.parametrize("start", [1234567860, 1234567875, 1234567889])
    def test_code_expires_after_61_seconds(self, secret, start):
        code = get_current_totp(secret, at(start))
        assert not verify_totp(secret, code, at(start + 61))

    def test_zero_drift_rejects_neighbouring_step(self, secret):
        code = get_current_totp(secret, at(1234567860))

        assert verify_totp(secret, code, at(1234567889), drift_steps=0)
        assert not verify_totp(secret, code, at(1234567890), drift_steps=0)

    def test_spaces_in_code_are_ignored(self, secret):
        assert verify_totp(secret, "287 082", at(59))
        assert verify_totp(secret, " 287082 ", at(59))

    @pytest.mark.parametrize("code", ["", "28708", "2870823", "abcdef", "28708a", None])
    def test_malformed_code_returns_false(self, secret, code):
        assert verify_totp(secret, code, at(59)) is False

    def test_malformed_secret_returns_false(self):
        assert verify_totp("not-a-secret", "287082", at(59)) is False

    def test_verifier_uses_configured_drift(self, secret):
        code = get_current_totp(secret, at(1234567860))

        assert TotpVerifier(drift_steps=2).verify(secret, code, at(1234567860 + 61))
        assert not TotpVerifier(drift_steps=1).verify(secret, code, at(1234567860 + 61))

    def test_normalize_code(self):
        assert normalize_code(" 123 456 ") == "123456"
        with pytest.raises(ValidationError):
            normalize_code("12345")

    def test_unknown_digest_rejected(self):
        with pytest.raises(ValidationError):
            TotpVerifier(digest="md5")


# ============================================
# Provisioning Tests
# ============================================

class TestProvisioning:
    """Test the otpauth:// URI and QR code."""

    def test_uri_format(self, secret):
        uri = get_totp_uri(secret, "alice@example.com", issuer="OllyTracker")
        parsed = urlparse(uri)
        query = parse_qs(parsed.query)

        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert unquote(parsed.path) == "/OllyTracker:alice@example.com"
        assert query["secret"] == [secret]
        assert query["issuer"] == ["OllyTracker"]

    def test_sha256_uri_names_algorithm(self, secret):
        uri = TotpVerifier(digest="sha256").provisioning_uri(secret, "alice")
        assert parse_qs(urlparse(uri).query)["algorithm"] == ["SHA256"]

    def test_qr_code_is_png(self, secret):
        qr = generate_qr_code_base64(get_totp_uri(secret, "alice"))
        assert base64.b64decode(qr).startswith(b"\x89PNG")
