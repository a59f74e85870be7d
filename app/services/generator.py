import json
import logging
from typing import Protocol, Sequence

import anthropic
from pydantic import ValidationError

from app.errors import AIGenerationFailure
from app.models.conversation import Category, RawFacts, StructuredContent, UploadedImage
from app.services.business_settings import BusinessSettingsStore

logger = logging.getLogger(__name__)

TOOL_NAME = "submit_product_content"

PRODUCT_CONTENT_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "description": "Refined, SEO-optimized English product title."},
        "slug": {"type": "string", "description": "URL-friendly English slug based on the new name."},
        "description": {
            "type": "string",
            "description": "SEO-rich description of about 300 words, formatted with HTML tags.",
        },
        "short_description": {"type": "string", "description": "Concise bullet-pointed summary."},
        "tags": {"type": "array", "items": {"type": "string"}, "description": "English and local keywords."},
        "categories": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Category names, chosen from the available list when one fits.",
        },
        "attributes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"name": {"type": "string"}, "option": {"type": "string"}},
                "required": ["name", "option"],
            },
        },
        "images": {
            "type": "array",
            "items": {"type": "object", "properties": {"alt": {"type": "string"}}, "required": ["alt"]},
            "description": "One alt text per provided image, in the same order.",
        },
        "meta_data": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"key": {"type": "string"}, "value": {"type": "string"}},
                "required": ["key", "value"],
            },
            "description": "SEO meta: _yoast_wpseo_focuskw and _yoast_wpseo_metadesc.",
        },
        "regular_price": {"type": "number", "description": "Suggested price; omit to keep the entered one."},
    },
}

SYSTEM_PROMPT = """You are an e-commerce content optimizer for a WooCommerce furniture store in \
Addis Ababa, Ethiopia. Given raw product facts and photos, produce complete, SEO-optimized \
catalog content and submit it with the submit_product_content tool.

- The name and the first paragraph of the description must contain the focus keyphrase.
- Weave relevant Amharic words naturally into the description for local SEO.
- Link the description to the store's phone number and social pages when they are given.
- Write one descriptive alt text per image that includes the focus keyphrase.
- Prefer categories from the available list; only invent a category when none fits."""


class ContentGenerator(Protocol):
    async def generate(
        self,
        facts: RawFacts,
        known_categories: Sequence[Category],
        images: Sequence[UploadedImage],
        previous: StructuredContent | None = None,
    ) -> StructuredContent: ...


class AnthropicContentGenerator:
    """Drafts catalog content with a forced tool call on the Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        max_retries: int = 2,
        timeout: float = 60.0,
        settings_store: BusinessSettingsStore | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self._settings_store = settings_store
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            max_retries=max_retries,
            timeout=timeout,
        )

    async def _business_context(self) -> str:
        if self._settings_store is None:
            return ""
        business = await self._settings_store.get()
        lines = [
            f"Phone Number: {business.phone_number}",
            f"Facebook: {business.facebook_url}",
            f"Instagram: {business.instagram_url}",
            f"Telegram: {business.telegram_url}",
            f"TikTok: {business.tiktok_url}",
        ]
        if business.common_keywords:
            lines.append(f"Common keywords: {business.common_keywords}")
        return "\n".join(lines)

    async def build_prompt(
        self,
        facts: RawFacts,
        known_categories: Sequence[Category],
        image_count: int,
        previous: StructuredContent | None = None,
    ) -> str:
        categories = [{"id": c.id, "name": c.name, "slug": c.slug} for c in known_categories]
        parts = [
            "Input data:",
            f"Raw Name: {facts.product_name or ''}",
            f"Material: {facts.material or ''}",
            f"Amharic Name: {facts.localized_name or ''}",
            f"Focus Keywords: {facts.focus_keywords or ''}",
            f"Price (ETB): {facts.price if facts.price is not None else ''}",
            f"Number of images: {image_count}",
            "",
            "Available categories:",
            json.dumps(categories, ensure_ascii=False),
        ]
        business = await self._business_context()
        if business:
            parts += ["", "Business & link information:", business]
        if previous is not None:
            parts += [
                "",
                "A previous draft exists. Improve on it rather than repeating it:",
                previous.model_dump_json(exclude_none=True),
            ]
        return "\n".join(parts)

    async def generate(
        self,
        facts: RawFacts,
        known_categories: Sequence[Category],
        images: Sequence[UploadedImage],
        previous: StructuredContent | None = None,
    ) -> StructuredContent:
        content: list[dict] = [
            {"type": "image", "source": {"type": "url", "url": image.url}}
            for image in images
            if image.url and image.url.startswith(("http://", "https://"))
        ]
        content.append({
            "type": "text",
            "text": await self.build_prompt(facts, known_categories, len(images), previous),
        })

        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=SYSTEM_PROMPT,
                tools=[{
                    "name": TOOL_NAME,
                    "description": "Submit the generated product content.",
                    "input_schema": PRODUCT_CONTENT_SCHEMA,
                }],
                tool_choice={"type": "tool", "name": TOOL_NAME},
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIError as exc:
            logger.warning("Content generation failed: %s", exc)
            raise AIGenerationFailure(f"The AI service failed: {exc}") from exc

        for block in response.content:
            if block.type == "tool_use" and block.name == TOOL_NAME:
                try:
                    return StructuredContent.model_validate(block.input)
                except ValidationError as exc:
                    raise AIGenerationFailure("The AI returned content in an unexpected shape.") from exc
        raise AIGenerationFailure("The AI did not return any product content.")
