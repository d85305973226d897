"""
tests/test_config.py -- Settings validation rules in core/config.py.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

STRONG_KEY = "s" * 40


def test_dev_mode_generates_secret_key() -> None:
    settings = Settings(debug=True, secret_key="")
    assert len(settings.secret_key) >= 32


def test_production_requires_secret_key() -> None:
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="")


def test_short_secret_key_rejected() -> None:
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(debug=True, secret_key="short")


def test_secure_cookies_follow_debug() -> None:
    assert Settings(debug=False, secret_key=STRONG_KEY).secure_cookies is True
    assert Settings(debug=True, secret_key=STRONG_KEY).secure_cookies is False
    assert Settings(debug=True, secret_key=STRONG_KEY, secure_cookies=True).secure_cookies is True


def test_lifetime_cap_must_cover_ttl() -> None:
    with pytest.raises(ValidationError):
        Settings(debug=True, secret_key=STRONG_KEY, session_ttl_seconds=600, session_max_lifetime_seconds=60)


def test_defaults() -> None:
    settings = Settings(debug=True, secret_key=STRONG_KEY)
    assert settings.session_ttl_seconds == 86400
    assert settings.session_cookie_name == "pmo_session"
    assert settings.hold_department_name == "Hold"
    assert settings.ldap_search_filter == "(uid={{username}})"
