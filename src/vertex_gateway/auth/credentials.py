"""Short-lived bearer tokens for the Vertex AI API.

Credential sources are tried in order; each either returns a grant or a miss
(``None``). The service-account source signs an RS256 assertion and exchanges
it at the OAuth token endpoint (JWT-bearer grant). Tokens are cached until
``EXPIRY_MARGIN_S`` before they expire.
"""
from __future__ import annotations
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

import httpx
import jwt

from vertex_gateway.common.errors import CredentialError
from vertex_gateway.common.settings import GatewaySettings

LOGGER = logging.getLogger("vertex_gateway.auth")

TOKEN_URI = "https://oauth2.googleapis.com/token"
METADATA_TOKEN_URL = (
    "http://metadata.google.internal/computeMetadata/v1/instance/service-accounts/default/token"
)
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_S = 3600
EXPIRY_MARGIN_S = 60.0


@dataclass(frozen=True)
class ServiceCredential:
    client_email: str
    private_key: str
    token_uri: str = TOKEN_URI

    @classmethod
    def from_json(cls, raw: str) -> "ServiceCredential":
        """Parse a service-account key file's JSON content.

        Raises:
            CredentialError: If the JSON is invalid or required fields are missing.
        """
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CredentialError(
                "Failed to parse service account JSON. Verify GOOGLE_SERVICE_ACCOUNT_JSON "
                "contains the full key file content.",
                details=str(e),
            ) from e
        if not isinstance(data, dict):
            raise CredentialError("Service account JSON must be an object")

        missing = [k for k in ("client_email", "private_key") if not data.get(k)]
        if missing:
            raise CredentialError(f"Service account JSON missing fields: {', '.join(missing)}")

        private_key = str(data["private_key"])
        if "\\n" in private_key:
            private_key = private_key.replace("\\n", "\n")
        return cls(
            client_email=str(data["client_email"]),
            private_key=private_key,
            token_uri=str(data.get("token_uri") or TOKEN_URI),
        )


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: float = ASSERTION_LIFETIME_S


@dataclass(frozen=True)
class CachedToken:
    access_token: str
    expires_at: float

    def is_fresh(self, now: float, margin: float = EXPIRY_MARGIN_S) -> bool:
        return now < self.expires_at - margin


class TokenSource(Protocol):
    name: str

    async def fetch(self, client: httpx.AsyncClient) -> TokenGrant | None: ...


def _grant_from_json(data: Any, source: str) -> TokenGrant:
    if not isinstance(data, dict) or not data.get("access_token"):
        raise CredentialError(f"Token response from {source} has no access_token")
    try:
        expires_in = float(data.get("expires_in", ASSERTION_LIFETIME_S))
    except (TypeError, ValueError):
        expires_in = ASSERTION_LIFETIME_S
    return TokenGrant(access_token=str(data["access_token"]), expires_in=expires_in)


class MetadataServerSource:
    """Token from the platform metadata server; any failure is a miss."""

    name = "metadata-server"

    def __init__(self, url: str = METADATA_TOKEN_URL, timeout: float = 2.0) -> None:
        self.url = url
        self.timeout = timeout

    async def fetch(self, client: httpx.AsyncClient) -> TokenGrant | None:
        try:
            r = await client.get(
                self.url, headers={"Metadata-Flavor": "Google"}, timeout=self.timeout
            )
            if not r.is_success:
                LOGGER.debug("Metadata server answered %s", r.status_code)
                return None
            return _grant_from_json(r.json(), self.name)
        except (httpx.HTTPError, ValueError, CredentialError) as e:
            LOGGER.debug("Metadata server unavailable: %s", e)
            return None


class ServiceAccountSource:
    """Signed-assertion exchange using a service-account key.

    Never misses: an absent or broken credential is a ``CredentialError``.
    """

    name = "service-account"

    def __init__(
        self,
        credential_json: str | None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.credential_json = credential_json
        self.clock = clock

    def build_assertion(self, credential: ServiceCredential) -> str:
        now = int(self.clock())
        payload = {
            "iss": credential.client_email,
            "sub": credential.client_email,
            "aud": credential.token_uri,
            "iat": now,
            "exp": now + ASSERTION_LIFETIME_S,
            "scope": CLOUD_PLATFORM_SCOPE,
        }
        try:
            return jwt.encode(
                payload,
                credential.private_key,
                algorithm="RS256",
                headers={"typ": "JWT"},
            )
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise CredentialError(
                "Service account private key is not a valid PEM RSA key", details=str(e)
            ) from e

    async def fetch(self, client: httpx.AsyncClient) -> TokenGrant | None:
        if not self.credential_json:
            raise CredentialError(
                "Google Cloud credentials not configured. Set GOOGLE_SERVICE_ACCOUNT_JSON "
                "to the full JSON content of a service account key file."
            )
        credential = ServiceCredential.from_json(self.credential_json)
        LOGGER.info("Exchanging signed assertion for %s", credential.client_email)
        assertion = self.build_assertion(credential)
        try:
            r = await client.post(
                credential.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            )
        except httpx.HTTPError as e:
            raise CredentialError("Token endpoint unreachable", details=str(e)) from e
        if not r.is_success:
            LOGGER.error("Token exchange failed: %s %s", r.status_code, r.text[:500])
            raise CredentialError(
                f"Failed to get access token: {r.status_code}", details=r.text
            )
        try:
            data = r.json()
        except ValueError as e:
            raise CredentialError("Token endpoint returned invalid JSON", details=r.text) from e
        return _grant_from_json(data, self.name)


def default_sources(settings: GatewaySettings) -> list[TokenSource]:
    """Metadata probe only when no service-account key is configured."""
    sources: list[TokenSource] = []
    if not settings.service_account_json and settings.metadata_probe:
        sources.append(MetadataServerSource())
    sources.append(ServiceAccountSource(settings.service_account_json))
    return sources


class CredentialBroker:
    """Owns the cached bearer token and its single-flight refresh."""

    def __init__(
        self,
        sources: Sequence[TokenSource],
        clock: Callable[[], float] = time.time,
        margin: float = EXPIRY_MARGIN_S,
    ) -> None:
        self.sources = list(sources)
        self.clock = clock
        self.margin = margin
        self._cached: CachedToken | None = None
        self._lock = asyncio.Lock()

    async def acquire_token(self, client: httpx.AsyncClient) -> str:
        cached = self._cached
        if cached is not None and cached.is_fresh(self.clock(), self.margin):
            return cached.access_token

        async with self._lock:
            # another caller may have refreshed while we waited
            cached = self._cached
            if cached is not None and cached.is_fresh(self.clock(), self.margin):
                return cached.access_token

            for source in self.sources:
                grant = await source.fetch(client)
                if grant is None:
                    continue
                self._cached = CachedToken(
                    access_token=grant.access_token,
                    expires_at=self.clock() + grant.expires_in,
                )
                LOGGER.info("Obtained access token from %s (expires_in=%ss)", source.name, grant.expires_in)
                return grant.access_token

        raise CredentialError("No credential source produced an access token")

    def invalidate(self) -> None:
        self._cached = None
