"""Shared fixtures for indexkit tests."""

import base64
import time
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from jose import jwt

from indexkit.config import ResolvedConfiguration

ISSUER = "https://login.example.com/tenant/"
AUDIENCE = "indexer-api"
SIGNING_SECRET = "test-signing-secret-0123456789abcdef"
SIGNING_KID = "test-key-1"

JWKS = {
    "keys": [
        {
            "kty": "oct",
            "kid": SIGNING_KID,
            "alg": "HS256",
            "k": base64.urlsafe_b64encode(SIGNING_SECRET.encode()).rstrip(b"=").decode(),
        }
    ]
}


def make_token(
    secret: str = SIGNING_SECRET,
    audience: str = AUDIENCE,
    issuer: str = ISSUER,
    expires_in: int = 300,
    subject: str = "user-1",
) -> str:
    claims = {
        "sub": subject,
        "aud": audience,
        "iss": issuer,
        "iat": int(time.time()),
        "exp": int(time.time()) + expires_in,
    }
    return jwt.encode(claims, secret, algorithm="HS256", headers={"kid": SIGNING_KID})


def static_keys(kid: Optional[str] = None):
    return JWKS, ISSUER


def make_configuration(**values: Any) -> ResolvedConfiguration:
    """Build a configuration from keyword args; ``__`` in a name becomes ``.``."""
    return ResolvedConfiguration({k.replace("__", "."): v for k, v in values.items()})


class FakeSearchClient:
    """In-memory stand-in for AzureSearchClient that records calls."""

    def __init__(self, remote: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.remote = remote
        self.error = error
        self.reads = 0
        self.writes: List[Dict[str, Any]] = []

    def get_index(self, name: str) -> Optional[Dict[str, Any]]:
        self.reads += 1
        if self.error:
            raise self.error
        return self.remote

    def create_or_update_index(self, definition: Dict[str, Any]) -> Dict[str, Any]:
        self.writes.append(definition)
        self.remote = definition
        return definition


@pytest.fixture
def fake_search():
    return FakeSearchClient()


@pytest.fixture
def consul_factory():
    """A consul.Consul replacement returning one shared mock client."""
    client = MagicMock(name="consul_client")
    client.agent.service.register.return_value = True
    factory = MagicMock(name="consul_factory", return_value=client)
    factory.client = client
    return factory
