import logging
import time

from pydantic import ValidationError

from app.errors import CommerceAPIError, EntryNotFound, PersistenceFailure
from app.models.conversation import CatalogEntry, Category, MergedProductPayload
from app.services.woocommerce import WooCommerceClient

logger = logging.getLogger(__name__)


class CatalogRepository:
    """Reads and writes catalog entries on the commerce backend.

    Categories are cached in-process; every successful save invalidates the
    cache because the backend may have created categories by name.
    """

    def __init__(self, client: WooCommerceClient, category_ttl: float = 300.0):
        self._client = client
        self._category_ttl = category_ttl
        self._categories: list[Category] | None = None
        self._categories_loaded_at = 0.0

    async def get_entry(self, entry_id: int) -> CatalogEntry:
        try:
            raw = await self._client.get_product(entry_id)
        except CommerceAPIError as exc:
            raise PersistenceFailure(f"Could not load product {entry_id}: {exc.message}") from exc
        if raw is None:
            raise EntryNotFound(entry_id)
        try:
            return CatalogEntry.model_validate(raw)
        except ValidationError as exc:
            raise PersistenceFailure(f"Product {entry_id} has an unexpected shape") from exc

    async def save(self, payload: MergedProductPayload, entry_id: int | None = None) -> CatalogEntry:
        """Create a new entry, or update ``entry_id`` when given."""
        body = payload.to_backend()
        try:
            if entry_id is None:
                raw = await self._client.create_product(body)
            else:
                raw = await self._client.update_product(entry_id, body)
        except CommerceAPIError as exc:
            raise PersistenceFailure(exc.message) from exc
        self.invalidate_categories()
        try:
            entry = CatalogEntry.model_validate(raw)
        except ValidationError as exc:
            raise PersistenceFailure("The store returned an unexpected product record") from exc
        logger.info("Saved product %s (%s) as %s", entry.id, entry.name, payload.status)
        return entry

    async def list_categories(self) -> list[Category]:
        now = time.monotonic()
        if self._categories is not None and now - self._categories_loaded_at < self._category_ttl:
            return self._categories
        try:
            raw = await self._client.list_categories()
        except CommerceAPIError as exc:
            raise PersistenceFailure(f"Could not load categories: {exc.message}") from exc
        self._categories = [Category.model_validate(item) for item in raw]
        self._categories_loaded_at = now
        return self._categories

    def invalidate_categories(self) -> None:
        self._categories = None
