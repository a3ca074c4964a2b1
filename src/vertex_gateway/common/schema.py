"""Pydantic models for request/response types.

Requests are a tagged union keyed by the envelope's ``endpoint`` value;
``parse_request`` validates a raw payload into the matching model before
anything is dispatched upstream.
"""
from __future__ import annotations
import re
from enum import Enum
from typing import Any, ClassVar, Mapping, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from vertex_gateway.common.errors import ValidationError


class Endpoint(str, Enum):
    GENERATE_CONTENT = "generate-content"
    GENERATE_CONTENT_WITH_IMAGES = "generate-content-with-images"
    GENERATE_IMAGES = "generate-images"
    GENERATE_STYLED_IMAGE = "generate-styled-image"
    GENERATE_VIDEO = "generate-video"
    VIDEO_OPERATION_STATUS = "video-operation-status"


HEALTH_ENDPOINTS = frozenset({"health", "ping"})

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)
_DATA_URL_MIME_RE = re.compile(r"^data:([^;,]+)")


class _RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class InlineImage(_RequestModel):
    mime_type: str = Field(alias="mimeType", min_length=1)
    data: str = Field(min_length=1)

    @classmethod
    def from_reference(cls, ref: str) -> "InlineImage":
        """Build an inline image from a data URL or bare base64 string.

        Bare base64 is assumed to be PNG.
        """
        if ref.startswith("data:"):
            match = _DATA_URL_RE.match(ref)
            if match:
                return cls(mime_type=match.group(1), data=match.group(2))
            head, _, tail = ref.partition(",")
            mime = _DATA_URL_MIME_RE.match(head)
            return cls(
                mime_type=mime.group(1) if mime else "image/png",
                data=tail or ref,
            )
        return cls(mime_type="image/png", data=ref)

    def to_part(self) -> dict[str, Any]:
        return {"inlineData": {"mimeType": self.mime_type, "data": self.data}}


def _none_to_list(value: Any) -> Any:
    return [] if value is None else value


class TextRequest(_RequestModel):
    kind: ClassVar[Endpoint] = Endpoint.GENERATE_CONTENT

    prompt: str | None = None
    system_instruction: str | None = Field(default=None, alias="systemInstruction")
    model: str | None = None

    @model_validator(mode="after")
    def require_prompt(self) -> "TextRequest":
        if not self.prompt:
            raise ValueError("Missing prompt parameter")
        return self


class MultimodalRequest(_RequestModel):
    kind: ClassVar[Endpoint] = Endpoint.GENERATE_CONTENT_WITH_IMAGES

    prompt: str | None = None
    images: list[InlineImage] = Field(default_factory=list)
    system_instruction: str | None = Field(default=None, alias="systemInstruction")
    model: str | None = None

    @field_validator("images", mode="before")
    @classmethod
    def coerce_images(cls, value: Any) -> Any:
        return _none_to_list(value)

    @model_validator(mode="after")
    def require_input(self) -> "MultimodalRequest":
        if not self.prompt and not self.images:
            raise ValueError("Missing prompt or images parameter")
        return self


class ImageSynthesisRequest(_RequestModel):
    kind: ClassVar[Endpoint] = Endpoint.GENERATE_STYLED_IMAGE

    prompt: str | None = None
    image_urls: list[str] = Field(default_factory=list, alias="imageUrls")
    quality: str | None = "standard"
    style: str | None = "realistic"
    aspect_ratio: str | None = Field(default="3:4", alias="aspectRatio")

    @field_validator("image_urls", mode="before")
    @classmethod
    def coerce_urls(cls, value: Any) -> Any:
        return _none_to_list(value)

    @field_validator("image_urls")
    @classmethod
    def require_image_data(cls, value: list[str]) -> list[str]:
        for i, url in enumerate(value):
            if not url.strip():
                raise ValueError(f"imageUrls[{i}] is empty")
        return value

    @field_validator("quality", mode="before")
    @classmethod
    def default_quality(cls, value: Any) -> Any:
        return "standard" if value is None else value

    @field_validator("style", mode="before")
    @classmethod
    def default_style(cls, value: Any) -> Any:
        return "realistic" if value is None else value

    @model_validator(mode="after")
    def require_input(self) -> "ImageSynthesisRequest":
        if not self.prompt and not self.image_urls:
            raise ValueError("Missing prompt or imageUrls parameter")
        return self

    def reference_images(self) -> list[InlineImage]:
        return [InlineImage.from_reference(url) for url in self.image_urls]


class ImageBatchRequest(_RequestModel):
    kind: ClassVar[Endpoint] = Endpoint.GENERATE_IMAGES

    prompt: str | None = None
    aspect_ratio: str | None = Field(default="1:1", alias="aspectRatio")
    # Accepted for compatibility; a single image is produced.
    number_of_images: int = Field(default=1, alias="numberOfImages")

    @model_validator(mode="after")
    def require_prompt(self) -> "ImageBatchRequest":
        if not self.prompt:
            raise ValueError("Missing prompt parameter")
        return self

    def to_synthesis(self) -> ImageSynthesisRequest:
        return ImageSynthesisRequest(
            prompt=self.prompt,
            image_urls=[],
            quality="standard",
            style="realistic",
            aspect_ratio=self.aspect_ratio,
        )


class VideoSynthesisRequest(_RequestModel):
    kind: ClassVar[Endpoint] = Endpoint.GENERATE_VIDEO

    prompt: str | None = None
    aspect_ratio: str | None = Field(default=None, alias="aspectRatio")
    resolution: str | None = None
    source_image: Any = Field(default=None, alias="sourceImage")

    @model_validator(mode="after")
    def require_prompt(self) -> "VideoSynthesisRequest":
        if not self.prompt:
            raise ValueError("Missing prompt parameter")
        return self


class VideoStatusRequest(_RequestModel):
    kind: ClassVar[Endpoint] = Endpoint.VIDEO_OPERATION_STATUS

    operation_name: str | None = Field(default=None, alias="operationName")

    @model_validator(mode="after")
    def require_operation(self) -> "VideoStatusRequest":
        if not self.operation_name:
            raise ValueError("Missing operationName parameter")
        return self


GenerationRequest = Union[
    TextRequest,
    MultimodalRequest,
    ImageSynthesisRequest,
    ImageBatchRequest,
    VideoSynthesisRequest,
    VideoStatusRequest,
]

REQUEST_MODELS: dict[Endpoint, type[_RequestModel]] = {
    model.kind: model
    for model in (
        TextRequest,
        MultimodalRequest,
        ImageSynthesisRequest,
        ImageBatchRequest,
        VideoSynthesisRequest,
        VideoStatusRequest,
    )
}


def _describe(exc: pydantic.ValidationError) -> str:
    messages = []
    for err in exc.errors():
        cause = (err.get("ctx") or {}).get("error")
        if isinstance(cause, ValueError):
            messages.append(str(cause))
            continue
        loc = ".".join(str(p) for p in err.get("loc", ()))
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(messages)


def parse_request(endpoint: Endpoint, payload: Mapping[str, Any]) -> GenerationRequest:
    """Validate ``payload`` into the request model for ``endpoint``.

    Raises:
        ValidationError: If required fields are missing or malformed.
    """
    model = REQUEST_MODELS[endpoint]
    try:
        return model.model_validate(dict(payload))
    except pydantic.ValidationError as e:
        raise ValidationError(_describe(e), details=str(e)) from e


class GenerationResult(BaseModel):
    """Normalized result: exactly one of text, image or operation is set."""

    text: str | None = None
    image: str | None = None
    operation: dict[str, Any] | None = None
    message: str | None = None

    @model_validator(mode="after")
    def exactly_one(self) -> "GenerationResult":
        populated = [v for v in (self.text, self.image, self.operation) if v is not None]
        if len(populated) != 1:
            raise ValueError("GenerationResult needs exactly one of text, image, operation")
        return self

    def to_payload(self) -> dict[str, Any]:
        if self.text is not None:
            return {"text": self.text}
        if self.image is not None:
            return {"image": self.image}
        payload: dict[str, Any] = {"operation": self.operation}
        if self.message is not None:
            payload["message"] = self.message
        return payload
