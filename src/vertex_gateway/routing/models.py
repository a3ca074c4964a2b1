"""Quality tier -> upstream model profile, with the fixed fallback chain."""
from __future__ import annotations
from dataclasses import dataclass

from vertex_gateway.common.settings import GatewayConfig

GLOBAL = "global"
REGIONAL = "regional"

FLASH_IMAGE_MODEL = "gemini-2.5-flash-image"
PRO_IMAGE_MODEL = "gemini-3-pro-image-preview"
DEFAULT_TEXT_MODEL = "gemini-3-pro-preview-11-2025"
FALLBACK_TEXT_MODEL = "gemini-2.5-flash"

DEFAULT_TIER = "standard"


@dataclass(frozen=True)
class ModelProfile:
    model_id: str
    location: str = REGIONAL
    image_size: str | None = None
    supports_image_size: bool = False

    @property
    def is_global(self) -> bool:
        return self.location == GLOBAL

    def location_for(self, config: GatewayConfig) -> str:
        return GLOBAL if self.is_global else config.region


FLASH_IMAGE = ModelProfile(FLASH_IMAGE_MODEL)

# imageSize: "1K" (~1024px), "2K" (~2048px), "4K" (~4096px); pro image only
# serves from the global location.
TIER_PROFILES: dict[str, ModelProfile] = {
    "standard": FLASH_IMAGE,
    "regular": FLASH_IMAGE,
    "hd": ModelProfile(PRO_IMAGE_MODEL, GLOBAL, "1K", supports_image_size=True),
    "qhd": ModelProfile(PRO_IMAGE_MODEL, GLOBAL, "2K", supports_image_size=True),
    "uhd": ModelProfile(PRO_IMAGE_MODEL, GLOBAL, "4K", supports_image_size=True),
}


class ModelSelector:
    """Read-only lookup tables for image tiers and text models."""

    def __init__(
        self,
        tiers: dict[str, ModelProfile] | None = None,
        image_fallback: ModelProfile = FLASH_IMAGE,
    ) -> None:
        self.tiers = dict(TIER_PROFILES if tiers is None else tiers)
        self.image_fallback = image_fallback

    def resolve(self, quality: str | None) -> tuple[ModelProfile, ModelProfile]:
        """Map a quality tier to ``(primary, fallback)``.

        Unknown tiers fall back to the standard tier rather than failing.
        """
        key = (quality or "").strip().lower()
        primary = self.tiers.get(key) or self.tiers[DEFAULT_TIER]
        return primary, self.image_fallback

    def resolve_text(self, model: str | None = None) -> tuple[ModelProfile, ModelProfile | None]:
        """Text/multimodal model; only the default model has a fallback."""
        if model and model != DEFAULT_TEXT_MODEL:
            return ModelProfile(model), None
        return ModelProfile(DEFAULT_TEXT_MODEL), ModelProfile(FALLBACK_TEXT_MODEL)
