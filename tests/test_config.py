"""
tests/test_config.py -- Settings validation.

Covers the SECRET_KEY policy [M6][M7] and the OTP shape validators.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings


def test_debug_generates_secret_key():
    settings = Settings(debug=True, secret_key="")
    assert len(settings.secret_key) >= 32


def test_production_requires_secret_key():
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="")


def test_short_secret_key_rejected():
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(debug=True, secret_key="too-short")


@pytest.mark.parametrize("length", [3, 13])
def test_otp_length_bounds(length):
    with pytest.raises(ValidationError):
        Settings(debug=True, otp_length=length)


def test_otp_alphabet_needs_two_symbols():
    with pytest.raises(ValidationError):
        Settings(debug=True, otp_alphabet="777")


def test_defaults():
    settings = Settings(debug=True)
    assert settings.session_ttl_seconds == 24 * 60 * 60
    assert settings.otp_ttl_seconds == 15 * 60
    assert settings.otp_length == 6
    assert settings.temp_password_ttl_seconds == 72 * 60 * 60
