"""Error taxonomy for the product conversation.

Every error raised by the service layer derives from ``ProductBotError`` so the
dialogue controller can catch them at a single boundary and turn them into a
user-facing reply. Adapter clients raise their own low-level errors
(``CommerceAPIError``, ``TelegramAPIError``) which the services translate.
"""


class ProductBotError(Exception):
    """Base class for recoverable conversation failures."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MissingRequiredFact(ProductBotError):
    kind = "missing_fact"

    def __init__(self, fact: str, message: str | None = None):
        super().__init__(message or f"Missing required fact: {fact}")
        self.fact = fact


class ImageFetchError(ProductBotError):
    kind = "image_fetch_error"


class UnsupportedImageFormat(ProductBotError):
    kind = "unsupported_image_format"


class ImageUploadError(ProductBotError):
    kind = "image_upload_error"


class WatermarkFailure(ProductBotError):
    kind = "watermark_failure"


class AIGenerationFailure(ProductBotError):
    kind = "ai_generation_failure"


class CategoryResolutionAmbiguous(ProductBotError):
    kind = "category_ambiguous"

    def __init__(self, name: str, candidate_ids: list[int]):
        super().__init__(f"Category '{name}' matches several categories: {candidate_ids}")
        self.name = name
        self.candidate_ids = candidate_ids


class PersistenceFailure(ProductBotError):
    kind = "persistence_failure"


class EntryNotFound(PersistenceFailure):
    kind = "entry_not_found"

    def __init__(self, entry_id: int):
        super().__init__(f"Product {entry_id} was not found")
        self.entry_id = entry_id


# -- Adapter-level errors --

class CommerceAPIError(Exception):
    """Raised by the WooCommerce client for non-success responses."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TelegramAPIError(Exception):
    pass
