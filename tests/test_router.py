from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from fakes import PNG_B64, RecordingSleep, Upstream, image_response, text_response
from vertex_gateway.common.errors import (
    ExtractionError,
    GatewayTimeoutError,
    UpstreamError,
    ValidationError,
)
from vertex_gateway.common.schema import Endpoint, ImageSynthesisRequest, InlineImage, TextRequest
from vertex_gateway.common.settings import GatewayConfig
from vertex_gateway.routing.models import FLASH_IMAGE, ModelProfile, ModelSelector
from vertex_gateway.routing.retry import RetryPolicy
from vertex_gateway.routing.router import (
    RequestRouter,
    build_contents,
    build_image_body,
    build_url,
)

CONFIG = GatewayConfig(project_id="demo-project", region="us-central1")

PRO_URL = (
    "https://aiplatform.googleapis.com/v1/projects/demo-project/locations/global"
    "/publishers/google/models/gemini-3-pro-image-preview:generateContent"
)
FLASH_URL = (
    "https://us-central1-aiplatform.googleapis.com/v1/projects/demo-project/locations/us-central1"
    "/publishers/google/models/gemini-2.5-flash-image:generateContent"
)
TEXT_URL = (
    "https://us-central1-aiplatform.googleapis.com/v1/projects/demo-project/locations/us-central1"
    "/publishers/google/models/gemini-3-pro-preview-11-2025:generateContent"
)
TEXT_FALLBACK_PART = "models/gemini-2.5-flash:generateContent"


def _dispatch(
    upstream: Upstream,
    kind: Endpoint,
    payload: Any,
    router: RequestRouter | None = None,
    deadline: float | None = None,
):
    router = router or RequestRouter()

    async def scenario():
        async with httpx.AsyncClient(transport=upstream.transport()) as client:
            return await router.dispatch(
                kind, payload, token="tok", config=CONFIG, client=client, deadline=deadline
            )

    return asyncio.run(scenario())


def test_build_url_global_and_regional() -> None:
    hd, fallback = ModelSelector().resolve("hd")
    assert build_url(hd, CONFIG) == PRO_URL
    assert build_url(fallback, CONFIG) == FLASH_URL


def test_images_precede_text() -> None:
    images = [InlineImage(mime_type="image/png", data="A"), InlineImage(mime_type="image/jpeg", data="B")]
    parts = build_contents("describe", images)[0]["parts"]
    assert parts == [
        {"inlineData": {"mimeType": "image/png", "data": "A"}},
        {"inlineData": {"mimeType": "image/jpeg", "data": "B"}},
        {"text": "describe"},
    ]


def test_image_body_size_only_when_supported() -> None:
    req = ImageSynthesisRequest(prompt="p", aspect_ratio="16:9")
    pro = ModelProfile("gemini-3-pro-image-preview", "global", "2K", supports_image_size=True)

    pro_body = build_image_body(req, pro)
    assert pro_body["generationConfig"] == {
        "responseModalities": ["IMAGE"],
        "imageConfig": {"aspectRatio": "16:9", "imageSize": "2K"},
    }
    flash_body = build_image_body(req, FLASH_IMAGE)
    assert flash_body["generationConfig"]["imageConfig"] == {"aspectRatio": "16:9"}


def test_image_body_without_aspect_ratio_has_no_image_config() -> None:
    body = build_image_body(ImageSynthesisRequest(prompt="p", aspect_ratio=None), FLASH_IMAGE)
    assert body["generationConfig"] == {"responseModalities": ["IMAGE"]}


def test_generate_content_returns_text(upstream: Upstream) -> None:
    upstream.on(TEXT_URL, (200, text_response("hi")))
    result = _dispatch(
        upstream, Endpoint.GENERATE_CONTENT, {"prompt": "hello", "systemInstruction": "be nice"}
    )

    assert result.to_payload() == {"text": "hi"}
    (request,) = upstream.requests
    assert request.headers["Authorization"] == "Bearer tok"
    body = upstream.bodies(TEXT_URL)[0]
    assert body["contents"] == [{"role": "user", "parts": [{"text": "hello"}]}]
    assert body["systemInstruction"] == {"parts": [{"text": "be nice"}]}


def test_text_falls_back_when_default_model_not_found(upstream: Upstream) -> None:
    upstream.on(TEXT_URL, (404, {"error": {"code": 404, "status": "NOT_FOUND"}}))
    upstream.on(TEXT_FALLBACK_PART, (200, text_response("from flash")))

    result = _dispatch(upstream, Endpoint.GENERATE_CONTENT, {"prompt": "hello"})
    assert result.text == "from flash"
    assert len(upstream.calls(TEXT_FALLBACK_PART)) == 1


def test_custom_text_model_has_no_fallback(upstream: Upstream) -> None:
    upstream.on("gemini-1.5-pro", (404, {"error": {"code": 404, "status": "NOT_FOUND"}}))
    with pytest.raises(UpstreamError) as info:
        _dispatch(upstream, Endpoint.GENERATE_CONTENT, {"prompt": "hello", "model": "gemini-1.5-pro"})
    assert info.value.status == 404
    assert len(upstream.requests) == 1


def test_text_upstream_error_keeps_status_and_body(upstream: Upstream) -> None:
    upstream.on(TEXT_URL, (500, {"error": {"code": 500, "message": "backend exploded"}}))
    with pytest.raises(UpstreamError) as info:
        _dispatch(upstream, Endpoint.GENERATE_CONTENT, TextRequest(prompt="hello"))
    assert info.value.status == 500
    assert "backend exploded" in info.value.message
    assert "backend exploded" in info.value.body


def test_multimodal_orders_images_before_prompt(upstream: Upstream) -> None:
    upstream.on(TEXT_URL, (200, text_response("a shoe")))
    payload = {"prompt": "what is this?", "images": [{"mimeType": "image/jpeg", "data": "QUJD"}]}
    result = _dispatch(upstream, Endpoint.GENERATE_CONTENT_WITH_IMAGES, payload)

    assert result.text == "a shoe"
    parts = upstream.bodies(TEXT_URL)[0]["contents"][0]["parts"]
    assert parts == [{"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}}, {"text": "what is this?"}]


def test_hd_rate_limited_falls_back_to_regional_flash(upstream: Upstream, sleep: RecordingSleep) -> None:
    upstream.on(PRO_URL, (429, {"error": {"code": 429, "message": "Resource exhausted"}}))
    upstream.on(FLASH_URL, (200, image_response()))
    router = RequestRouter(policy=RetryPolicy(sleep=sleep))

    payload = {"prompt": "red sneaker", "imageUrls": [], "quality": "hd"}
    result = _dispatch(upstream, Endpoint.GENERATE_STYLED_IMAGE, payload, router=router)

    assert result.image == f"data:image/png;base64,{PNG_B64}"
    assert sleep.delays == [2.0, 4.0, 8.0]

    primary_bodies = upstream.bodies(PRO_URL)
    assert len(primary_bodies) == 4
    assert primary_bodies[0]["generationConfig"]["imageConfig"] == {"aspectRatio": "3:4", "imageSize": "1K"}

    (fallback_body,) = upstream.bodies(FLASH_URL)
    assert "imageSize" not in fallback_body["generationConfig"]["imageConfig"]
    assert fallback_body["contents"] == primary_bodies[0]["contents"]


def test_hd_not_found_falls_back_without_retry(upstream: Upstream, sleep: RecordingSleep) -> None:
    upstream.on(PRO_URL, (404, "model not found"))
    upstream.on(FLASH_URL, (200, image_response()))
    router = RequestRouter(policy=RetryPolicy(sleep=sleep))

    _dispatch(upstream, Endpoint.GENERATE_STYLED_IMAGE, {"prompt": "x", "quality": "uhd"}, router=router)
    assert sleep.delays == []
    assert len(upstream.calls(PRO_URL)) == 1
    assert len(upstream.calls(FLASH_URL)) == 1


def test_reference_images_are_sent_before_prompt(upstream: Upstream) -> None:
    upstream.on(FLASH_URL, (200, image_response()))
    payload = {"prompt": "restyle", "imageUrls": ["data:image/jpeg;base64,QUJD", "REVG"]}
    _dispatch(upstream, Endpoint.GENERATE_STYLED_IMAGE, payload)

    parts = upstream.bodies(FLASH_URL)[0]["contents"][0]["parts"]
    assert parts == [
        {"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}},
        {"inlineData": {"mimeType": "image/png", "data": "REVG"}},
        {"text": "restyle"},
    ]


def test_standard_tier_error_is_not_retried(upstream: Upstream, sleep: RecordingSleep) -> None:
    upstream.on(FLASH_URL, (429, "slow down"))
    router = RequestRouter(policy=RetryPolicy(sleep=sleep))

    with pytest.raises(UpstreamError) as info:
        _dispatch(upstream, Endpoint.GENERATE_STYLED_IMAGE, {"prompt": "x"}, router=router)
    assert info.value.status == 429
    assert sleep.delays == []
    assert len(upstream.requests) == 1


def test_generate_images_uses_standard_defaults(upstream: Upstream) -> None:
    upstream.on(FLASH_URL, (200, image_response()))
    result = _dispatch(upstream, Endpoint.GENERATE_IMAGES, {"prompt": "a lighthouse"})

    assert result.image is not None
    body = upstream.bodies(FLASH_URL)[0]
    assert body["contents"][0]["parts"] == [{"text": "a lighthouse"}]
    assert body["generationConfig"]["imageConfig"] == {"aspectRatio": "1:1"}


def test_image_without_inline_part_is_extraction_error(upstream: Upstream) -> None:
    upstream.on(FLASH_URL, (200, text_response("I cannot draw that")))
    with pytest.raises(ExtractionError):
        _dispatch(upstream, Endpoint.GENERATE_STYLED_IMAGE, {"prompt": "x"})


def test_video_returns_pending_operation_without_upstream_call(upstream: Upstream) -> None:
    result = _dispatch(upstream, Endpoint.GENERATE_VIDEO, {"prompt": "waves", "aspectRatio": "16:9"})
    assert result.operation is not None
    assert result.operation["name"].startswith("operations/veo-")
    assert result.operation["done"] is False
    assert result.message
    assert upstream.requests == []


def test_video_status_echoes_operation(upstream: Upstream) -> None:
    result = _dispatch(upstream, Endpoint.VIDEO_OPERATION_STATUS, {"operationName": "operations/veo-1"})
    assert result.operation == {"name": "operations/veo-1", "done": False, "response": None}
    assert upstream.requests == []


def test_missing_prompt_is_validation_error(upstream: Upstream) -> None:
    with pytest.raises(ValidationError):
        _dispatch(upstream, Endpoint.GENERATE_CONTENT, {"systemInstruction": "x"})
    assert upstream.requests == []


def test_mismatched_request_type_is_validation_error(upstream: Upstream) -> None:
    with pytest.raises(ValidationError):
        _dispatch(upstream, Endpoint.GENERATE_STYLED_IMAGE, TextRequest(prompt="hello"))


def test_expired_deadline_is_timeout(upstream: Upstream) -> None:
    router = RequestRouter(clock=lambda: 50.0)
    with pytest.raises(GatewayTimeoutError):
        _dispatch(upstream, Endpoint.GENERATE_CONTENT, {"prompt": "hi"}, router=router, deadline=10.0)
    assert upstream.requests == []


def test_transport_failure_is_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await RequestRouter().dispatch(
                Endpoint.GENERATE_CONTENT, {"prompt": "hi"}, token="tok", config=CONFIG, client=client
            )

    with pytest.raises(UpstreamError) as info:
        asyncio.run(scenario())
    assert info.value.status is None
