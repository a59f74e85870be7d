import hashlib
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Phase(str, Enum):
    COLLECTING_FACTS = "collecting_facts"
    GENERATING = "generating"
    AWAITING_DECISION = "awaiting_decision"
    PERSISTING = "persisting"
    DONE = "done"


FACT_NAMES = ("product_name", "material", "price", "localized_name", "focus_keywords")

FACT_LABELS = {
    "product_name": "product name",
    "material": "material",
    "price": "price",
    "localized_name": "localized (Amharic) name",
    "focus_keywords": "focus keywords",
}


# --- Raw facts & images ---

class RawFacts(BaseModel):
    product_name: str | None = None
    material: str | None = None
    price: Decimal | None = Field(default=None, ge=0)
    localized_name: str | None = None
    focus_keywords: str | None = None

    def missing(self, required: list[str] | tuple[str, ...]) -> list[str]:
        """Required fact names that are still empty, in asking order."""
        return [name for name in required if getattr(self, name) in (None, "")]


class ImageRef(BaseModel):
    """An image attached to the conversation.

    Exactly one of ``data``, ``data_uri`` or ``url`` locates a new image.
    A reference carrying ``media_id`` was uploaded before and is reused as is.
    """

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    data: bytes | None = None
    data_uri: str | None = None
    url: str | None = None
    filename: str | None = None
    media_id: int | None = None
    alt_text: str | None = None

    @model_validator(mode="after")
    def check_source(self) -> "ImageRef":
        if self.media_id is not None:
            return self
        sources = [value for value in (self.data, self.data_uri, self.url) if value]
        if len(sources) != 1:
            raise ValueError("an image reference needs exactly one of data, data_uri or url")
        return self

    def describe(self) -> str:
        if self.media_id is not None:
            return f"media:{self.media_id}"
        if self.url:
            return self.url
        if self.data_uri:
            head = self.data_uri.split(",", 1)[0]
            return f"{head},..."
        return f"inline:{self.filename or 'image'} ({len(self.data or b'')} bytes)"

    def fingerprint(self) -> str:
        digest = hashlib.sha256()
        if self.media_id is not None:
            digest.update(f"media:{self.media_id}".encode())
        digest.update((self.url or "").encode())
        digest.update((self.data_uri or "").encode())
        digest.update(self.data or b"")
        digest.update((self.filename or "").encode())
        return digest.hexdigest()


class UploadedImage(BaseModel):
    media_id: int
    url: str | None = None
    alt_text: str | None = None
    source: str | None = None    # fingerprint of the ImageRef it was uploaded from


class ImageFailure(BaseModel):
    reference: ImageRef
    kind: str
    detail: str


# --- AI generated content ---

class ProductAttribute(BaseModel):
    name: str
    option: str


class ImageAlt(BaseModel):
    alt: str = ""


class MetaEntry(BaseModel):
    key: str
    value: Any = None


class StructuredContent(BaseModel):
    name: str | None = None
    slug: str | None = None
    description: str | None = None
    short_description: str | None = None
    tags: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    attributes: list[ProductAttribute] = Field(default_factory=list)
    images: list[ImageAlt] = Field(default_factory=list)
    meta_data: list[MetaEntry] = Field(default_factory=list)
    regular_price: Decimal | None = None


# --- Commerce backend records ---

class Category(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    slug: str = ""


class EntryTerm(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    name: str = ""
    slug: str | None = None


class EntryImage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    src: str | None = None
    alt: str = ""


class EntryAttribute(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    name: str
    options: list[str] = Field(default_factory=list)


class CatalogEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""
    slug: str = ""
    status: str = "draft"
    description: str = ""
    short_description: str = ""
    regular_price: str = ""
    categories: list[EntryTerm] = Field(default_factory=list)
    tags: list[EntryTerm] = Field(default_factory=list)
    images: list[EntryImage] = Field(default_factory=list)
    attributes: list[EntryAttribute] = Field(default_factory=list)
    meta_data: list[MetaEntry] = Field(default_factory=list)

    def has_complete_content(self) -> bool:
        return bool(self.name and self.description and self.short_description)

    def meta_value(self, key: str) -> Any:
        for entry in self.meta_data:
            if entry.key == key:
                return entry.value
        return None

    def attribute_option(self, name: str) -> str | None:
        for attribute in self.attributes:
            if attribute.name.lower() == name.lower() and attribute.options:
                return attribute.options[0]
        return None


# --- Payload sent to the commerce backend ---

class CategoryRef(BaseModel):
    id: int | None = None
    name: str | None = None


class TagRef(BaseModel):
    name: str


class PayloadAttribute(BaseModel):
    name: str
    options: list[str]


class PayloadImage(BaseModel):
    id: int
    src: str | None = None
    alt: str


class MergedProductPayload(BaseModel):
    name: str
    slug: str | None = None
    regular_price: str | None = None
    description: str | None = None
    short_description: str | None = None
    categories: list[CategoryRef] = Field(default_factory=list)
    tags: list[TagRef] = Field(default_factory=list)
    attributes: list[PayloadAttribute] = Field(default_factory=list)
    images: list[PayloadImage] = Field(default_factory=list)
    meta_data: list[MetaEntry] = Field(default_factory=list)
    status: Literal["publish", "draft"] = "draft"

    def to_backend(self) -> dict:
        """JSON body in the shape the WooCommerce products endpoint expects."""
        return self.model_dump(mode="json", exclude_none=True)


# --- Turns ---

class InboundMessage(BaseModel):
    """One inbound chat event, already validated by the transport."""

    session_id: str = Field(min_length=1)
    text: str | None = None
    images: list[ImageRef] = Field(default_factory=list)
    edit_target_id: int | None = None
    apply_watermark: bool | None = None
    reset: bool = False
    message_id: str | None = None

    def dedupe_key(self) -> str:
        if self.message_id:
            return f"id:{self.message_id}"
        digest = hashlib.sha256()
        digest.update((self.text or "").strip().encode())
        for image in self.images:
            digest.update(image.fingerprint().encode())
        digest.update(str(self.edit_target_id).encode())
        return f"sha:{digest.hexdigest()}"


class TurnReply(BaseModel):
    reply_text: str
    suggested_actions: list[str] = Field(default_factory=list)
    phase: Phase
    last_error: str | None = None
    image_failures: list[ImageFailure] = Field(default_factory=list)


class ConversationState(BaseModel):
    session_id: str
    phase: Phase = Phase.COLLECTING_FACTS
    raw_facts: RawFacts = Field(default_factory=RawFacts)
    pending_images: list[ImageRef] = Field(default_factory=list)
    uploaded_images: list[UploadedImage] = Field(default_factory=list)
    generated_content: StructuredContent | None = None
    edit_target_id: int | None = None
    existing_entry: CatalogEntry | None = None
    last_error: str | None = None
    awaiting_fact: str | None = None
    apply_watermark: bool | None = None
    last_inbound_key: str | None = None
    last_reply: TurnReply | None = None

    def add_uploaded(self, images: list[UploadedImage]) -> None:
        """Append uploaded images, skipping media ids already present."""
        known = {image.media_id for image in self.uploaded_images}
        for image in images:
            if image.media_id in known:
                continue
            self.uploaded_images.append(image)
            known.add(image.media_id)

    def add_pending(self, images: list[ImageRef]) -> None:
        """Queue images for upload, skipping ones already queued or uploaded."""
        known = {ref.fingerprint() for ref in self.pending_images}
        known.update(image.source for image in self.uploaded_images if image.source)
        for ref in images:
            fingerprint = ref.fingerprint()
            if fingerprint in known:
                continue
            self.pending_images.append(ref)
            known.add(fingerprint)

    def record_upload(self, image: UploadedImage) -> None:
        """Keep one finished upload and drop the pending ref it came from."""
        self.add_uploaded([image])
        if image.source:
            self.pending_images = [ref for ref in self.pending_images if ref.fingerprint() != image.source]

    def has_images(self) -> bool:
        return bool(self.pending_images or self.uploaded_images)

    def start_new_product(self) -> None:
        """Forget everything about the current product, keeping the session."""
        self.phase = Phase.COLLECTING_FACTS
        self.raw_facts = RawFacts()
        self.pending_images = []
        self.uploaded_images = []
        self.generated_content = None
        self.edit_target_id = None
        self.existing_entry = None
        self.awaiting_fact = None
        self.apply_watermark = None
