"""
Dual-scheme authorization gate.

A request is authorized when it authenticates under either scheme:

    SecureToken   Authorization: SecureToken <shared secret>
    Bearer        Authorization: Bearer <JWT issued by the configured authority>

Each scheme is a pure function of the request headers returning an
AuthOutcome. any_of() combines schemes; the first Accepted outcome wins.
With no usable scheme every request is rejected.
"""

import hmac
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit

import requests
from jose import jwt, ExpiredSignatureError, JWTError

from indexkit.config import OAuthConfig, SecureTokenConfig

logger = logging.getLogger("indexkit.auth")

SECURE_TOKEN_SCHEME = "SecureToken"
BEARER_SCHEME = "Bearer"
DEFAULT_ALGORITHMS = ("RS256", "RS384", "RS512", "ES256", "ES384", "ES512")

# jose only validates exp/aud/iss when present unless told to require them
_REQUIRED_CLAIMS = {"require_exp": True, "require_aud": True, "require_iss": True}


class AuthSchemeConfigError(Exception):
    """A scheme was configured with unusable parameters."""
    pass


class AuthRejected(Exception):
    """No scheme authenticated the request."""

    def __init__(self, reasons: Sequence[str], challenges: Sequence[str]):
        super().__init__("; ".join(reasons) or "not authenticated")
        self.reasons = list(reasons)
        self.challenges = list(challenges)


class AuthSchemeKind(str, Enum):
    SHARED_SECRET = "shared_secret"
    BEARER_JWT = "bearer_jwt"


@dataclass(frozen=True)
class AuthSchemeDescriptor:
    scheme_name: str
    kind: AuthSchemeKind
    settings: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Identity:
    scheme: str
    subject: str
    claims: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Accepted:
    identity: Identity


@dataclass(frozen=True)
class Rejected:
    scheme: str
    reason: str
    # The caller presented credentials for this scheme
    attempted: bool = False


AuthOutcome = Union[Accepted, Rejected]


def _authorization(headers: Mapping[str, str]) -> Optional[Tuple[str, str]]:
    """Split the Authorization header into (scheme, credentials)."""
    value = headers.get("authorization")
    if value is None:
        value = next(
            (v for k, v in headers.items() if k.lower() == "authorization"), None
        )
    if not value:
        return None
    scheme, _, credentials = value.strip().partition(" ")
    return scheme, credentials.strip()


class SecureTokenScheme:
    """Shared-secret scheme comparing the presented token in constant time."""

    def __init__(self, descriptor: AuthSchemeDescriptor):
        self.descriptor = descriptor
        self.name = descriptor.scheme_name
        self._secret: str = descriptor.settings.get("secure_token") or ""
        self._realm: str = descriptor.settings.get("realm") or "indexer"

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def challenge(self, outcome: Optional[Rejected] = None) -> str:
        return f'{self.name} realm="{self._realm}"'

    def authenticate(self, headers: Mapping[str, str]) -> AuthOutcome:
        presented = _authorization(headers)
        if presented is None or presented[0].lower() != self.name.lower():
            return Rejected(self.name, "no secure token presented")
        if not self.configured:
            return Rejected(self.name, "secure token not configured", attempted=True)
        if not hmac.compare_digest(presented[1].encode(), self._secret.encode()):
            return Rejected(self.name, "secure token mismatch", attempted=True)
        return Accepted(Identity(scheme=self.name, subject=self.name))


class JwksProvider:
    """
    Signing keys of an OpenID Connect authority.

    Metadata and the key set are fetched lazily on first use and cached.
    An unknown key id triggers at most one refresh per cool-down period.
    """

    def __init__(
        self,
        authority: str,
        timeout: int = 10,
        session: Optional[requests.Session] = None,
        refresh_cooldown: float = 300.0,
    ):
        self._metadata_url = authority.rstrip("/") + "/.well-known/openid-configuration"
        self._authority = authority
        self._timeout = timeout
        self._session = session or requests.Session()
        self._refresh_cooldown = refresh_cooldown
        self._lock = threading.Lock()
        self._issuer: Optional[str] = None
        self._jwks: Optional[Dict[str, Any]] = None
        self._fetched_at = 0.0

    def _get_json(self, url: str) -> Dict[str, Any]:
        response = self._session.get(url, timeout=self._timeout)
        response.raise_for_status()
        return response.json()

    def _refresh(self) -> None:
        metadata = self._get_json(self._metadata_url)
        jwks_uri = metadata.get("jwks_uri")
        if not jwks_uri:
            raise ValueError(f"No jwks_uri in metadata at {self._metadata_url}")
        self._jwks = self._get_json(jwks_uri)
        self._issuer = metadata.get("issuer") or self._authority
        self._fetched_at = time.monotonic()
        logger.info("Loaded %d signing keys from %s", len(self._jwks.get("keys", [])), jwks_uri)

    def keys(self, kid: Optional[str] = None) -> Tuple[Dict[str, Any], str]:
        """
        Return (jwks, issuer).

        Raises:
            requests.RequestException, ValueError: metadata unavailable.
        """
        with self._lock:
            stale = time.monotonic() - self._fetched_at > self._refresh_cooldown
            if self._jwks is None:
                self._refresh()
            elif kid and stale and not any(k.get("kid") == kid for k in self._jwks.get("keys", [])):
                logger.info("Unknown signing key %s, refreshing key set", kid)
                self._refresh()
            return self._jwks, self._issuer


KeyResolver = Callable[[Optional[str]], Tuple[Dict[str, Any], str]]


class JwtBearerScheme:
    """Bearer scheme validating signature, expiry, issuer and audience."""

    def __init__(
        self,
        descriptor: AuthSchemeDescriptor,
        key_resolver: Optional[KeyResolver] = None,
        algorithms: Sequence[str] = DEFAULT_ALGORITHMS,
    ):
        self.descriptor = descriptor
        self.name = descriptor.scheme_name
        self._authority: str = descriptor.settings.get("authority") or ""
        self._audience: str = descriptor.settings.get("audience") or ""
        self._algorithms = list(algorithms)
        if key_resolver is None and self._authority:
            key_resolver = JwksProvider(
                self._authority, timeout=descriptor.settings.get("metadata_timeout", 10)
            ).keys
        self._key_resolver = key_resolver

    @property
    def configured(self) -> bool:
        return bool(self._authority and self._audience and self._key_resolver)

    def challenge(self, outcome: Optional[Rejected] = None) -> str:
        if outcome is not None and outcome.attempted:
            return f'{self.name} error="invalid_token"'
        return self.name

    def authenticate(self, headers: Mapping[str, str]) -> AuthOutcome:
        presented = _authorization(headers)
        if presented is None or presented[0].lower() != self.name.lower():
            return Rejected(self.name, "no bearer token presented")
        if not self.configured:
            return Rejected(self.name, "bearer authority not configured", attempted=True)

        token = presented[1]
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError as e:
            return Rejected(self.name, f"malformed bearer token: {e}", attempted=True)

        try:
            jwks, issuer = self._key_resolver(kid)
        except (requests.RequestException, ValueError) as e:
            logger.warning("Cannot load signing keys from %s: %s", self._authority, e)
            return Rejected(self.name, "signing keys unavailable", attempted=True)

        try:
            claims = jwt.decode(
                token,
                jwks,
                algorithms=self._algorithms,
                audience=self._audience,
                issuer=issuer,
                options=_REQUIRED_CLAIMS,
            )
        except ExpiredSignatureError:
            return Rejected(self.name, "bearer token expired", attempted=True)
        except JWTError as e:
            return Rejected(self.name, f"invalid bearer token: {e}", attempted=True)

        return Accepted(Identity(scheme=self.name, subject=claims.get("sub", ""), claims=claims))


class AuthorizationPolicy:
    """
    Satisfied when any of its schemes accepts the request.

    Evaluation only reads immutable scheme state, so a policy can be shared
    by concurrent requests.
    """

    def __init__(self, schemes: Sequence[Any]):
        self.schemes = tuple(schemes)
        if not any(s.configured for s in self.schemes):
            logger.warning("No authentication scheme is configured; every request will be rejected")

    def _run(self, headers: Mapping[str, str]) -> Union[Accepted, List[Rejected]]:
        """First Accepted outcome, or one rejection per scheme in order."""
        rejections: List[Rejected] = []
        for scheme in self.schemes:
            outcome = scheme.authenticate(headers)
            if isinstance(outcome, Accepted):
                return outcome
            rejections.append(outcome)
        return rejections

    def evaluate(self, headers: Mapping[str, str]) -> AuthOutcome:
        result = self._run(headers)
        if isinstance(result, Accepted):
            return result
        reason = "; ".join(f"{r.scheme}: {r.reason}" for r in result) or "no authentication scheme"
        return Rejected("any", reason, attempted=any(r.attempted for r in result))

    def authorize(self, headers: Mapping[str, str]) -> Identity:
        """Return the caller's identity or raise AuthRejected with challenges."""
        result = self._run(headers)
        if isinstance(result, Accepted):
            return result.identity
        rejections = result
        # Every scheme takes part in the challenge
        raise AuthRejected(
            reasons=[f"{r.scheme}: {r.reason}" for r in rejections],
            challenges=[s.challenge(r) for s, r in zip(self.schemes, rejections)],
        )


def any_of(*schemes) -> AuthorizationPolicy:
    return AuthorizationPolicy(schemes)


def _validate_authority(authority: str) -> None:
    try:
        parts = urlsplit(authority)
    except ValueError as e:
        raise AuthSchemeConfigError(f"Malformed OAuthAuthority {authority!r}: {e}") from e
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise AuthSchemeConfigError(
            f"OAuthAuthority must be an absolute http(s) URL, got {authority!r}"
        )


class AuthGateComposer:
    """
    Builds the default authorization policy from the two scheme configs.

    Construction is pure: no metadata is fetched until the first bearer
    token arrives.
    """

    def __init__(
        self,
        key_resolver: Optional[KeyResolver] = None,
        algorithms: Sequence[str] = DEFAULT_ALGORITHMS,
    ):
        self._key_resolver = key_resolver
        self._algorithms = algorithms

    @staticmethod
    def describe(
        secret_config: SecureTokenConfig, bearer_config: OAuthConfig
    ) -> Tuple[AuthSchemeDescriptor, AuthSchemeDescriptor]:
        secret = AuthSchemeDescriptor(
            scheme_name=SECURE_TOKEN_SCHEME,
            kind=AuthSchemeKind.SHARED_SECRET,
            settings={"secure_token": secret_config.secure_token, "realm": secret_config.realm},
        )
        bearer = AuthSchemeDescriptor(
            scheme_name=BEARER_SCHEME,
            kind=AuthSchemeKind.BEARER_JWT,
            settings={
                "authority": bearer_config.authority,
                "audience": bearer_config.audience,
                "metadata_timeout": bearer_config.metadata_timeout,
            },
        )
        return secret, bearer

    def compose(
        self, secret_config: SecureTokenConfig, bearer_config: OAuthConfig
    ) -> AuthorizationPolicy:
        """
        Raises:
            AuthSchemeConfigError: malformed authority URL, or an authority
                without an audience to validate against.
        """
        if bearer_config.authority:
            _validate_authority(bearer_config.authority)
            if not bearer_config.audience:
                raise AuthSchemeConfigError("OAuthAuthority is set but OAuthAudience is empty")

        secret_descriptor, bearer_descriptor = self.describe(secret_config, bearer_config)
        policy = any_of(
            SecureTokenScheme(secret_descriptor),
            JwtBearerScheme(bearer_descriptor, self._key_resolver, self._algorithms),
        )
        logger.info(
            "Authorization policy composed (secure token %s, bearer %s)",
            "configured" if policy.schemes[0].configured else "not configured",
            "configured" if policy.schemes[1].configured else "not configured",
        )
        return policy
