"""Build Vertex AI requests per operation kind, send them, normalize results.

Endpoints:
- generate-content / generate-content-with-images -> text
- generate-styled-image / generate-images -> image data URL
- generate-video / video-operation-status -> pending operation handle
"""
from __future__ import annotations
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Sequence

import httpx
from pydantic import BaseModel

from vertex_gateway.common.errors import (
    ExtractionError,
    GatewayTimeoutError,
    UpstreamError,
    ValidationError,
)
from vertex_gateway.common.schema import (
    Endpoint,
    GenerationRequest,
    GenerationResult,
    ImageBatchRequest,
    ImageSynthesisRequest,
    InlineImage,
    MultimodalRequest,
    TextRequest,
    VideoStatusRequest,
    VideoSynthesisRequest,
    parse_request,
)
from vertex_gateway.common.settings import GatewayConfig
from vertex_gateway.routing.extract import extract_image, extract_text
from vertex_gateway.routing.models import ModelProfile, ModelSelector
from vertex_gateway.routing.retry import RetryPolicy

LOGGER = logging.getLogger("vertex_gateway.router")

GLOBAL_HOST = "https://aiplatform.googleapis.com"
VIDEO_METADATA_TYPE = "type.googleapis.com/google.cloud.aiplatform.v1.GenerateVideoOperationMetadata"


def build_url(profile: ModelProfile, config: GatewayConfig) -> str:
    """generateContent URL; global models must not use the regional host."""
    location = profile.location_for(config)
    host = GLOBAL_HOST if profile.is_global else f"https://{location}-aiplatform.googleapis.com"
    return (
        f"{host}/v1/projects/{config.project_id}/locations/{location}"
        f"/publishers/google/models/{profile.model_id}:generateContent"
    )


def build_contents(prompt: str | None, images: Sequence[InlineImage] = ()) -> list[dict[str, Any]]:
    # Images always precede the text prompt.
    parts: list[dict[str, Any]] = [img.to_part() for img in images]
    if prompt:
        parts.append({"text": prompt})
    return [{"role": "user", "parts": parts}]


def build_text_body(
    prompt: str | None,
    images: Sequence[InlineImage] = (),
    system_instruction: str | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"contents": build_contents(prompt, images)}
    if system_instruction:
        body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
    return body


def build_image_body(request: ImageSynthesisRequest, profile: ModelProfile) -> dict[str, Any]:
    """Fresh body for one attempt against ``profile``."""
    generation_config: dict[str, Any] = {"responseModalities": ["IMAGE"]}
    image_config: dict[str, str] = {}
    if request.aspect_ratio:
        image_config["aspectRatio"] = request.aspect_ratio
    if profile.supports_image_size and profile.image_size:
        image_config["imageSize"] = profile.image_size
    if image_config:
        generation_config["imageConfig"] = image_config
    return {
        "contents": build_contents(request.prompt, request.reference_images()),
        "generationConfig": generation_config,
    }


@dataclass(frozen=True)
class UpstreamCall:
    """Everything one request needs to talk to the provider."""

    client: httpx.AsyncClient
    token: str
    config: GatewayConfig
    deadline: float | None = None
    timeout: float = 120.0


class RequestRouter:
    def __init__(
        self,
        selector: ModelSelector | None = None,
        policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.selector = selector or ModelSelector()
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self._handlers: dict[Endpoint, Callable[[UpstreamCall, Any], Awaitable[GenerationResult]]] = {
            Endpoint.GENERATE_CONTENT: self._generate_content,
            Endpoint.GENERATE_CONTENT_WITH_IMAGES: self._generate_content_with_images,
            Endpoint.GENERATE_IMAGES: self._generate_images,
            Endpoint.GENERATE_STYLED_IMAGE: self._generate_styled_image,
            Endpoint.GENERATE_VIDEO: self._generate_video,
            Endpoint.VIDEO_OPERATION_STATUS: self._video_operation_status,
        }

    async def dispatch(
        self,
        kind: Endpoint,
        payload: Mapping[str, Any] | GenerationRequest,
        *,
        token: str,
        config: GatewayConfig,
        client: httpx.AsyncClient,
        deadline: float | None = None,
        timeout: float = 120.0,
    ) -> GenerationResult:
        """
        Route one request to its handler.

        Args:
            kind: Operation kind (envelope endpoint).
            payload: Raw operation fields, or an already-validated request.
            token: Bearer token for the provider.
            config: Resolved project id and region.
            client: HTTP client used for every upstream call.
            deadline: Monotonic instant after which no further call or backoff starts.
            timeout: Per-call timeout cap in seconds.

        Raises:
            ValidationError: If required fields are missing.
            UpstreamError: On a non-2xx response that cannot be recovered.
            ExtractionError: If a 2xx response carries no usable payload.
            GatewayTimeoutError: If the deadline expires.
        """
        if isinstance(payload, BaseModel):
            request = payload
            if getattr(request, "kind", None) is not kind:
                raise ValidationError(f"Request type {type(request).__name__} does not match {kind.value}")
        else:
            request = parse_request(kind, payload)

        call = UpstreamCall(client=client, token=token, config=config, deadline=deadline, timeout=timeout)
        return await self._handlers[kind](call, request)

    async def _post(self, call: UpstreamCall, profile: ModelProfile, body: dict[str, Any]) -> httpx.Response:
        timeout = call.timeout
        if call.deadline is not None:
            remaining = call.deadline - self.clock()
            if remaining <= 0:
                raise GatewayTimeoutError("Request deadline exceeded before calling Vertex AI")
            timeout = min(timeout, remaining)

        url = build_url(profile, call.config)
        LOGGER.info("POST model=%s location=%s", profile.model_id, profile.location_for(call.config))
        try:
            return await call.client.post(
                url,
                headers={"Authorization": f"Bearer {call.token}", "Content-Type": "application/json"},
                json=body,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(f"Vertex AI request timed out ({profile.model_id})") from e
        except httpx.HTTPError as e:
            LOGGER.error("Vertex AI request failed: %s", e)
            raise UpstreamError(None, str(e)) from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ExtractionError("Vertex AI returned a non-JSON response", details=response.text[:500]) from e

    async def _text(
        self,
        call: UpstreamCall,
        prompt: str | None,
        images: Sequence[InlineImage],
        system_instruction: str | None,
        model: str | None,
    ) -> GenerationResult:
        primary, fallback = self.selector.resolve_text(model)
        body = build_text_body(prompt, images, system_instruction)

        r = await self._post(call, primary, body)
        if r.status_code == 404 and fallback is not None and "NOT_FOUND" in r.text:
            LOGGER.warning("%s not available, falling back to %s", primary.model_id, fallback.model_id)
            r = await self._post(call, fallback, body)
        if not r.is_success:
            raise UpstreamError.from_response(r)
        return GenerationResult(text=extract_text(self._json(r)))

    async def _generate_content(self, call: UpstreamCall, request: TextRequest) -> GenerationResult:
        return await self._text(call, request.prompt, (), request.system_instruction, request.model)

    async def _generate_content_with_images(
        self, call: UpstreamCall, request: MultimodalRequest
    ) -> GenerationResult:
        return await self._text(
            call, request.prompt, request.images, request.system_instruction, request.model
        )

    async def _generate_styled_image(
        self, call: UpstreamCall, request: ImageSynthesisRequest
    ) -> GenerationResult:
        primary, fallback = self.selector.resolve(request.quality)
        LOGGER.info(
            "Quality: %s, Style: %s, Model: %s, ImageSize: %s, Location: %s",
            request.quality,
            request.style,
            primary.model_id,
            primary.image_size or "default",
            primary.location_for(call.config),
        )

        if primary.supports_image_size:
            outcome = await self.policy.run(
                lambda: self._post(call, primary, build_image_body(request, primary)),
                lambda: self._post(call, fallback, build_image_body(request, fallback)),
                deadline=call.deadline,
            )
            r = outcome.response
            if outcome.used_fallback:
                LOGGER.info("Image served by fallback model %s", fallback.model_id)
        else:
            r = await self._post(call, primary, build_image_body(request, primary))
            if not r.is_success:
                raise UpstreamError.from_response(r)

        return GenerationResult(image=extract_image(self._json(r)))

    async def _generate_images(self, call: UpstreamCall, request: ImageBatchRequest) -> GenerationResult:
        return await self._generate_styled_image(call, request.to_synthesis())

    async def _generate_video(self, call: UpstreamCall, request: VideoSynthesisRequest) -> GenerationResult:
        # No upstream call: the video protocol is not implemented.
        name = f"operations/veo-{uuid.uuid4().hex}"
        LOGGER.info("Video request accepted as pending operation %s", name)
        return GenerationResult(
            operation={"name": name, "done": False, "metadata": {"@type": VIDEO_METADATA_TYPE}},
            message="Video generation is not implemented; returned a pending operation handle",
        )

    async def _video_operation_status(
        self, call: UpstreamCall, request: VideoStatusRequest
    ) -> GenerationResult:
        return GenerationResult(
            operation={"name": request.operation_name, "done": False, "response": None},
            message="Video operation status polling is not implemented",
        )
