import asyncio
import json
import logging
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

WatermarkPlacement = Literal["bottom-right", "bottom-left", "top-right", "top-left", "center"]


class WatermarkConfig(BaseModel):
    image_url: str
    placement: WatermarkPlacement = "bottom-right"
    opacity: float = Field(default=0.7, ge=0, le=1)
    scale: float = Field(default=40, gt=0, le=100)    # % of the base image width
    padding: float = Field(default=5, ge=0, le=50)    # % of the base image size


class BusinessSettings(BaseModel):
    """Store-wide settings kept in a JSON file (camelCase keys on disk)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    phone_number: str = ""
    facebook_url: str = ""
    instagram_url: str = ""
    telegram_url: str = ""
    tiktok_url: str = ""
    common_keywords: str = ""
    watermark_image_url: str = ""
    watermark_placement: WatermarkPlacement = "bottom-right"
    watermark_opacity: float = Field(default=0.7, ge=0, le=1)
    watermark_scale: float = Field(default=40, gt=0, le=100)
    watermark_padding: float = Field(default=5, ge=0, le=50)

    def watermark(self) -> WatermarkConfig | None:
        if not self.watermark_image_url:
            return None
        return WatermarkConfig(
            image_url=self.watermark_image_url,
            placement=self.watermark_placement,
            opacity=self.watermark_opacity,
            scale=self.watermark_scale,
            padding=self.watermark_padding,
        )


class BusinessSettingsStore:
    """File-backed settings with a read cache that writes invalidate."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._cached: BusinessSettings | None = None
        self._write_lock = asyncio.Lock()

    async def get(self) -> BusinessSettings:
        if self._cached is None:
            self._cached = await asyncio.to_thread(self._read)
        return self._cached

    async def update(self, changes: dict) -> BusinessSettings:
        """Apply a partial update, persist it and drop the cached copy."""
        async with self._write_lock:
            current = await asyncio.to_thread(self._read)
            merged = current.model_dump() | changes
            updated = BusinessSettings.model_validate(merged)
            await asyncio.to_thread(self._write, updated)
            self.invalidate()
        return await self.get()

    def invalidate(self) -> None:
        self._cached = None

    def _read(self) -> BusinessSettings:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return BusinessSettings()
        except (OSError, ValueError) as exc:
            logger.error("Failed to read settings file %s: %s", self.path, exc)
            return BusinessSettings()
        try:
            return BusinessSettings.model_validate(raw)
        except ValidationError as exc:
            logger.error("Invalid settings file %s: %s", self.path, exc)
            return BusinessSettings()

    def _write(self, settings: BusinessSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(settings.model_dump(by_alias=True), indent=2),
            encoding="utf-8",
        )


class BusinessSettingsUpdate(BaseModel):
    """Partial update; only the fields sent are changed."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    phone_number: str | None = None
    facebook_url: str | None = None
    instagram_url: str | None = None
    telegram_url: str | None = None
    tiktok_url: str | None = None
    common_keywords: str | None = None
    watermark_image_url: str | None = None
    watermark_placement: WatermarkPlacement | None = None
    watermark_opacity: float | None = Field(default=None, ge=0, le=1)
    watermark_scale: float | None = Field(default=None, gt=0, le=100)
    watermark_padding: float | None = Field(default=None, ge=0, le=50)
