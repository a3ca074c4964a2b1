"""FastAPI front for the Vertex AI gateway.

Endpoints:
- GET /health
- POST /  { "endpoint": "...", ...operation fields }
- POST /api/vertex/{endpoint}  { ...operation fields }
- OPTIONS *  (CORS preflight)
"""
from __future__ import annotations
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from vertex_gateway.common.logging_setup import setup_logging
from vertex_gateway.common.settings import GatewaySettings
from vertex_gateway.serve.gateway import Gateway, health_payload

LOGGER = logging.getLogger("vertex_gateway.serve.app")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


def _invalid_json() -> JSONResponse:
    return JSONResponse({"error": "Invalid JSON in request body"}, status_code=400)


def create_app(gateway: Gateway | None = None) -> FastAPI:
    if gateway is None:
        settings = GatewaySettings.from_env()
        setup_logging(settings.log_level)
        gateway = Gateway.from_settings(settings)

    app = FastAPI(title="Vertex Gateway")
    app.state.gateway = gateway

    @app.middleware("http")
    async def add_cors_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in CORS_HEADERS.items():
            response.headers[name] = value
        return response

    @app.options("/{path:path}")
    def preflight(path: str) -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/health")
    def health() -> dict:
        return health_payload()

    @app.post("/")
    async def envelope(request: Request) -> JSONResponse:
        try:
            data = await request.json()
        except ValueError as e:
            LOGGER.warning("Failed to parse request body: %s", e)
            return _invalid_json()
        status, payload = await gateway.handle(data)
        return JSONResponse(payload, status_code=status)

    @app.post("/api/vertex/{endpoint}")
    async def by_path(endpoint: str, request: Request) -> JSONResponse:
        try:
            data = await request.json()
        except ValueError as e:
            LOGGER.warning("Failed to parse request body: %s", e)
            return _invalid_json()
        if not isinstance(data, dict):
            return _invalid_json()
        status, payload = await gateway.handle({**data, "endpoint": endpoint})
        return JSONResponse(payload, status_code=status)

    return app


app = create_app()
