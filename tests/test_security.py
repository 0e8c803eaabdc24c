# tests/test_security.py
"""Tests for vamo/transport/security.py: service token checks."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

STRONG_TOKEN = "aB3cD5eF7gH9iJ1kL3mN5oP7qR9sT1uX"


def _make_mock_settings(**overrides):
    """Return a MagicMock that behaves like vamo.config.settings."""
    defaults = {
        "dispatch_api_token": STRONG_TOKEN,
        "metrics_token": None,
        "is_production": False,
        "app_env": "dev",
    }
    defaults.update(overrides)
    mock = MagicMock()
    for k, v in defaults.items():
        setattr(mock, k, v)
    return mock


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


# ============================================================================
# Token validation
# ============================================================================

class TestTokenValidation:
    def test_strong_token_no_warnings(self):
        from vamo.transport.security import validate_token_strength
        assert validate_token_strength(STRONG_TOKEN, "DISPATCH_API_TOKEN") == []

    def test_short_token_warning(self):
        from vamo.transport.security import validate_token_strength
        warnings = validate_token_strength("shortAa1", "DISPATCH_API_TOKEN")
        assert any("too short" in w for w in warnings)

    def test_weak_pattern_warning(self):
        from vamo.transport.security import validate_token_strength
        token = "A1" * 20 + "password"
        warnings = validate_token_strength(token, "DISPATCH_API_TOKEN")
        assert any("weak pattern" in w for w in warnings)

    def test_low_diversity_warning(self):
        from vamo.transport.security import validate_token_strength
        warnings = validate_token_strength("q" * 40, "DISPATCH_API_TOKEN")
        assert any("diversity" in w for w in warnings)

    def test_generated_token_is_strong_enough(self):
        from vamo.transport.security import MIN_TOKEN_LENGTH, generate_secure_token
        token = generate_secure_token()
        assert len(token) >= MIN_TOKEN_LENGTH
        assert generate_secure_token() != token


# ============================================================================
# require_service_auth / require_metrics_auth
# ============================================================================

class TestServiceAuth:
    def test_valid_token_passes(self):
        from vamo.transport.security import require_service_auth
        with patch("vamo.transport.security.settings", _make_mock_settings()):
            require_service_auth(_bearer(STRONG_TOKEN))

    def test_missing_header_is_401(self):
        from vamo.transport.security import require_service_auth
        with patch("vamo.transport.security.settings", _make_mock_settings()):
            with pytest.raises(HTTPException) as exc_info:
                require_service_auth(None)
        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}

    def test_wrong_token_is_401(self):
        from vamo.transport.security import require_service_auth
        with patch("vamo.transport.security.settings", _make_mock_settings()):
            with pytest.raises(HTTPException) as exc_info:
                require_service_auth(_bearer("nope"))
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Invalid credentials"

    def test_unconfigured_token_is_503(self):
        from vamo.transport.security import require_service_auth
        with patch("vamo.transport.security.settings", _make_mock_settings(dispatch_api_token=None)):
            with pytest.raises(HTTPException) as exc_info:
                require_service_auth(_bearer(STRONG_TOKEN))
        assert exc_info.value.status_code == 503


class TestMetricsAuth:
    def test_falls_back_to_dispatch_token(self):
        from vamo.transport.security import require_metrics_auth
        with patch("vamo.transport.security.settings", _make_mock_settings()):
            require_metrics_auth(_bearer(STRONG_TOKEN))

    def test_dedicated_token_takes_over(self):
        from vamo.transport.security import require_metrics_auth
        mock_settings = _make_mock_settings(metrics_token="M" * 16 + "m" * 16 + "1")
        with patch("vamo.transport.security.settings", mock_settings):
            require_metrics_auth(_bearer("M" * 16 + "m" * 16 + "1"))
            with pytest.raises(HTTPException) as exc_info:
                require_metrics_auth(_bearer(STRONG_TOKEN))
        assert exc_info.value.status_code == 401


class TestCheckConfiguredTokens:
    def test_weak_tokens_logged(self):
        from vamo.transport import security
        mock_settings = _make_mock_settings(dispatch_api_token="test", metrics_token=None)
        with patch.object(security, "settings", mock_settings), \
                patch.object(security, "logger") as mock_logger:
            security.check_configured_tokens()

        messages = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert messages
        assert all("DISPATCH_API_TOKEN" in m for m in messages)
