"""Request pipeline behind the HTTP surface.

envelope -> endpoint -> config -> typed request -> token -> router -> result.
Every failure is turned into ``(status, {"error", "details"})``.
"""
from __future__ import annotations
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from vertex_gateway.auth.credentials import CredentialBroker, default_sources
from vertex_gateway.common.errors import (
    GatewayError,
    UnknownEndpointError,
    UpstreamError,
    ValidationError,
)
from vertex_gateway.common.schema import HEALTH_ENDPOINTS, Endpoint, parse_request
from vertex_gateway.common.settings import (
    GatewaySettings,
    SettingsStore,
    build_settings_store,
    resolve_config,
)
from vertex_gateway.routing.router import RequestRouter

LOGGER = logging.getLogger("vertex_gateway.gateway")

AVAILABLE_ENDPOINTS = [e.value for e in Endpoint]


def health_payload() -> dict[str, Any]:
    return {
        "status": "ok",
        "message": "Vertex AI gateway is running",
        "availableEndpoints": AVAILABLE_ENDPOINTS,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def resolve_endpoint(raw: Any) -> Endpoint | None:
    """Normalize the envelope's endpoint name; ``None`` means a health probe.

    Raises:
        ValidationError: If the endpoint is missing.
        UnknownEndpointError: If it names no known operation.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("Missing endpoint parameter")
    name = raw.strip()
    if name in HEALTH_ENDPOINTS:
        return None
    try:
        return Endpoint(name)
    except ValueError:
        pass
    if name.lower() == Endpoint.GENERATE_STYLED_IMAGE.value:
        LOGGER.warning("Endpoint %r matched case-insensitively", name)
        return Endpoint.GENERATE_STYLED_IMAGE
    raise UnknownEndpointError(name)


class Gateway:
    def __init__(
        self,
        settings: GatewaySettings,
        store: SettingsStore,
        broker: CredentialBroker,
        router: RequestRouter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.store = store
        self.broker = broker
        self.router = router or RequestRouter()
        self.transport = transport
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "Gateway":
        return cls(
            settings=settings,
            store=build_settings_store(settings),
            broker=CredentialBroker(default_sources(settings)),
        )

    async def handle(self, envelope: Any) -> tuple[int, dict[str, Any]]:
        try:
            return 200, await self._handle(envelope)
        except GatewayError as e:
            LOGGER.error("%s: %s", type(e).__name__, e.message)
            return e.status_code, e.to_payload()
        except Exception as e:
            LOGGER.exception("Unhandled gateway error")
            return 500, {"error": "Internal server error", "details": f"{type(e).__name__}: {e}"}

    async def _handle(self, envelope: Any) -> dict[str, Any]:
        if not isinstance(envelope, dict):
            raise ValidationError("Request body must be a JSON object")
        body = dict(envelope)
        kind = resolve_endpoint(body.pop("endpoint", None))
        if kind is None:
            return health_payload()

        LOGGER.info("Request endpoint=%s fields=%s", kind.value, sorted(body))
        config = resolve_config(self.store, self.settings)
        request = parse_request(kind, body)
        deadline = self.clock() + self.settings.request_deadline
        # the token exchange runs before the router applies the deadline itself
        timeout = min(self.settings.http_timeout, self.settings.request_deadline)

        async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
            token = await self.broker.acquire_token(client)
            try:
                result = await self.router.dispatch(
                    kind,
                    request,
                    token=token,
                    config=config,
                    client=client,
                    deadline=deadline,
                    timeout=self.settings.http_timeout,
                )
            except UpstreamError as e:
                if e.status == 401:
                    LOGGER.warning("Vertex AI rejected the access token; dropping cached token")
                    self.broker.invalidate()
                raise
        return result.to_payload()
