from pydantic import BaseModel, Field, model_validator

from app.models.conversation import ImageFailure, ImageRef, InboundMessage, Phase


# --- Session schemas ---

class CreateSessionResponse(BaseModel):
    session_id: str


class SessionInfo(BaseModel):
    session_id: str
    created_at: str
    phase: Phase
    message_count: int
    last_active: str


# --- Chat schemas ---

class ChatImage(BaseModel):
    """Image attached from the chat widget: a data URI, a remote URL, or an
    already uploaded media item (``id`` + ``src``)."""

    data_uri: str | None = None
    url: str | None = None
    id: int | None = None
    src: str | None = None
    alt: str | None = None
    filename: str | None = None

    @model_validator(mode="after")
    def check_source(self) -> "ChatImage":
        if self.id is None and not (self.data_uri or self.url):
            raise ValueError("image needs data_uri, url, or an existing media id")
        return self

    def to_ref(self) -> ImageRef:
        if self.id is not None:
            return ImageRef(media_id=self.id, url=self.src, alt_text=self.alt)
        if self.data_uri:
            return ImageRef(data_uri=self.data_uri, filename=self.filename, alt_text=self.alt)
        return ImageRef(url=self.url, filename=self.filename, alt_text=self.alt)


class ChatRequest(BaseModel):
    session_id: str = Field(min_length=1)
    message: str | None = None
    images: list[ChatImage] = Field(default_factory=list)
    edit_product_id: int | None = None
    apply_watermark: bool | None = None
    reset: bool = False
    message_id: str | None = None

    def to_inbound(self) -> InboundMessage:
        return InboundMessage(
            session_id=self.session_id,
            text=self.message,
            images=[image.to_ref() for image in self.images],
            edit_target_id=self.edit_product_id,
            apply_watermark=self.apply_watermark,
            reset=self.reset,
            message_id=self.message_id,
        )


class ChatResponse(BaseModel):
    session_id: str
    reply: str
    suggested_actions: list[str] = Field(default_factory=list)
    phase: Phase
    last_error: str | None = None
    image_failures: list[ImageFailure] = Field(default_factory=list)
