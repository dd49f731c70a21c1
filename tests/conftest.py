"""Pytest configuration and fixtures."""

import os
from unittest.mock import AsyncMock

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

# Set test environment variables before importing application modules
os.environ["OTEL_ENABLED"] = "false"
os.environ["AUDIT_ALL_ACCESS"] = "false"
os.environ["LOG_LEVEL"] = "DEBUG"


@pytest.fixture(scope="session")
def rsa_private_key():
    """Throwaway RSA key for signing app assertions."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_private_key) -> str:
    """PEM encoding of the throwaway RSA key."""
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture
def test_settings(tmp_path, private_key_pem):
    """Provide test settings with both issuers configured."""
    from trustgate.config import Settings

    return Settings(
        _env_file=None,
        github_oauth_client_id="test-client-id",
        github_oauth_client_secret="test-client-secret",
        github_oauth_redirect_uri="http://localhost:8000/oauth/callback",
        github_app_id="12345",
        github_app_private_key=private_key_pem,
        github_app_installation_id=42,
        audit_log_dir=str(tmp_path / "audit"),
        enterprise_mode=False,
        debug=True,
    )


def _wire_async_client(mock_client, **responses):
    """Wire a patched httpx.AsyncClient to return the given responses.

    Each keyword names a client method (get, post) and holds either a
    single response, or a list or callable used as the side effect.
    """
    mock_instance = AsyncMock()
    for method, response in responses.items():
        if isinstance(response, list | BaseException) or callable(response):
            getattr(mock_instance, method).side_effect = response
        else:
            getattr(mock_instance, method).return_value = response
    mock_instance.__aenter__.return_value = mock_instance
    mock_instance.__aexit__.return_value = None
    mock_client.return_value = mock_instance
    return mock_instance


@pytest.fixture
def wire_client():
    """Factory wiring a patched httpx.AsyncClient to canned responses."""
    return _wire_async_client
