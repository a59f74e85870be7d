import logging
import re

import httpx

from app.errors import CommerceAPIError

logger = logging.getLogger(__name__)


class WooCommerceClient:
    def __init__(
        self,
        api_url: str,
        consumer_key: str,
        consumer_secret: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        # Media uploads go through the WordPress REST API next to wc/v3.
        self.media_url = self.api_url.replace("/wp-json/wc/v3", "/wp-json/wp/v2") + "/media"
        self._client = httpx.AsyncClient(
            auth=(consumer_key, consumer_secret),
            timeout=timeout,
            transport=transport or httpx.AsyncHTTPTransport(retries=2),
        )

    # -- Low-level helpers --

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request to the wc/v3 API and raise CommerceAPIError on failure."""
        try:
            response = await self._client.request(method, f"{self.api_url}{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise CommerceAPIError(f"WooCommerce request failed: {exc}") from exc
        if response.is_error:
            raise CommerceAPIError(self._error_message(response), response.status_code)
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        message = f"WooCommerce API error. Status: {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            return message
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return message

    # -- Product methods --

    async def get_product(self, product_id: int) -> dict | None:
        """Get a single product. Returns None if it does not exist."""
        try:
            response = await self._request("GET", f"/products/{product_id}")
        except CommerceAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        return response.json()

    async def create_product(self, product_data: dict) -> dict:
        response = await self._request("POST", "/products", json=product_data)
        return response.json()

    async def update_product(self, product_id: int, product_data: dict) -> dict:
        response = await self._request("PUT", f"/products/{product_id}", json=product_data)
        return response.json()

    async def list_categories(self) -> list[dict]:
        """All product categories ordered by name, without 'uncategorized'."""
        response = await self._request(
            "GET",
            "/products/categories",
            params={"orderby": "name", "order": "asc", "per_page": 100},
        )
        return [c for c in response.json() if c.get("slug") != "uncategorized"]

    # -- Media --

    async def upload_media(self, data: bytes, filename: str, mime_type: str) -> dict:
        """Upload raw image bytes to the WordPress media library.

        Returns ``{"id": ..., "source_url": ...}``.
        """
        safe_name = re.sub(r"[^a-zA-Z0-9._-]", "_", filename)
        try:
            response = await self._client.post(
                self.media_url,
                content=data,
                headers={
                    "Content-Type": mime_type,
                    "Content-Disposition": f'attachment; filename="{safe_name}"',
                },
            )
        except httpx.HTTPError as exc:
            raise CommerceAPIError(f"Media upload failed: {exc}") from exc
        if response.is_error:
            raise CommerceAPIError(self._error_message(response), response.status_code)
        try:
            body = response.json()
            media_id = int(body["id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise CommerceAPIError(
                f"Media upload returned an unreadable response (status {response.status_code})",
                response.status_code,
            ) from exc
        logger.info("Uploaded media %s as id %s", safe_name, media_id)
        return {"id": media_id, "source_url": body.get("source_url")}

    async def close(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()
