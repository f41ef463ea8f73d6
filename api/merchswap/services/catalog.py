"""Storefront catalog adapter.

``CatalogClient`` is the narrow surface the rotation engine needs from the
storefront: read a gallery or a variant hero, create and delete gallery media,
reorder the gallery, and point a variant at a hero media.
``ShopifyCatalogClient`` implements it against the Shopify Admin GraphQL API.
"""

import abc
import logging
from typing import Any

import httpx

from merchswap.core.config import settings
from merchswap.core.errors import CatalogError
from merchswap.media.diff import ImageRef

logger = logging.getLogger(__name__)


class CatalogClient(abc.ABC):
    @abc.abstractmethod
    async def list_product_media(self, product_id: str) -> list[ImageRef]:
        """Current product gallery, in display order."""

    @abc.abstractmethod
    async def get_variant_hero(self, product_id: str, variant_id: str) -> ImageRef | None:
        """The single hero image of a variant, if it has one."""

    @abc.abstractmethod
    async def create_media(self, product_id: str, images: list[ImageRef]) -> list[str]:
        """Attach ``images`` to the product gallery; returns media ids in input order."""

    @abc.abstractmethod
    async def delete_media(self, product_id: str, media_ids: list[str]) -> None:
        ...

    @abc.abstractmethod
    async def reorder_media(self, product_id: str, media_ids: list[str]) -> None:
        """Reorder the gallery so ``media_ids`` appear in the given order."""

    @abc.abstractmethod
    async def set_variant_hero(self, product_id: str, variant_id: str, media_id: str) -> None:
        ...


# ---------------------------------------------------------------------------
# GraphQL documents
# ---------------------------------------------------------------------------

_PRODUCT_MEDIA_QUERY = """
query ProductMedia($productId: ID!) {
  product(id: $productId) {
    media(first: 250) {
      nodes {
        id
        alt
        ... on MediaImage { image { url } }
      }
    }
  }
}
"""

_VARIANT_HERO_QUERY = """
query VariantHero($variantId: ID!) {
  productVariant(id: $variantId) {
    media(first: 1) {
      nodes {
        id
        alt
        ... on MediaImage { image { url } }
      }
    }
  }
}
"""

_CREATE_MEDIA = """
mutation CreateProductMedia($productId: ID!, $media: [CreateMediaInput!]!) {
  productCreateMedia(productId: $productId, media: $media) {
    media { id }
    mediaUserErrors { field message }
  }
}
"""

_DELETE_MEDIA = """
mutation DeleteProductMedia($productId: ID!, $mediaIds: [ID!]!) {
  productDeleteMedia(productId: $productId, mediaIds: $mediaIds) {
    deletedMediaIds
    mediaUserErrors { field message }
  }
}
"""

_REORDER_MEDIA = """
mutation ReorderProductMedia($productId: ID!, $moves: [MoveInput!]!) {
  productReorderMedia(id: $productId, moves: $moves) {
    job { id done }
    mediaUserErrors { field message }
  }
}
"""

_SET_VARIANT_HERO = """
mutation SetVariantHero($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id }
    userErrors { field message }
  }
}
"""


def _image_from_node(node: dict[str, Any], position: int) -> ImageRef | None:
    image = node.get("image") or {}
    url = image.get("url")
    if not url:
        return None
    return ImageRef(url=url, media_id=node.get("id"), position=position, alt_text=node.get("alt"))


def _media_nodes(owner: dict[str, Any], label: str) -> list[dict[str, Any]]:
    try:
        nodes = owner["media"]["nodes"]
    except (KeyError, TypeError) as exc:
        raise CatalogError(f"{label} returned a malformed media connection") from exc
    if not isinstance(nodes, list):
        raise CatalogError(f"{label} returned a malformed media connection")
    return [node for node in nodes if isinstance(node, dict)]


class ShopifyCatalogClient(CatalogClient):
    """Shopify Admin GraphQL implementation of ``CatalogClient``.

    Parameters
    ----------
    shop_domain : str
        ``example.myshopify.com``.
    access_token : str
        Admin API access token for the shop.
    api_version : str
        Admin API version, e.g. ``2025-01``.
    transport : httpx.AsyncBaseTransport, optional
        Injected transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = settings.CATALOG_API_VERSION,
        timeout: float = settings.CATALOG_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = f"https://{shop_domain}/admin/api/{api_version}/graphql.json"
        self.access_token = access_token
        self.timeout = timeout
        self.transport = transport

    async def _graphql(self, document: str, variables: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                resp = await client.post(
                    self.endpoint,
                    json={"query": document, "variables": variables},
                    headers={
                        "X-Shopify-Access-Token": self.access_token,
                        "Content-Type": "application/json",
                    },
                )
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                raise CatalogError(f"Catalog request failed: {exc}") from exc
            try:
                payload = resp.json()
            except ValueError as exc:
                raise CatalogError(f"Catalog returned a non-JSON response: {exc}") from exc

        if not isinstance(payload, dict):
            raise CatalogError(f"Catalog returned an unexpected payload: {type(payload).__name__}")
        if payload.get("errors"):
            messages = "; ".join(str(err.get("message", err)) for err in payload["errors"])
            raise CatalogError(f"Catalog GraphQL error: {messages}")
        return payload.get("data") or {}

    @staticmethod
    def _raise_user_errors(operation: str, body: dict[str, Any]) -> None:
        errors = body.get("mediaUserErrors") or body.get("userErrors") or []
        if errors:
            raise CatalogError(f"{operation} failed: {errors[0].get('message')}", user_errors=errors)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_product_media(self, product_id: str) -> list[ImageRef]:
        data = await self._graphql(_PRODUCT_MEDIA_QUERY, {"productId": product_id})
        product = data.get("product")
        if product is None:
            raise CatalogError(f"Product {product_id} not found")
        images: list[ImageRef] = []
        for node in _media_nodes(product, f"Product {product_id}"):
            image = _image_from_node(node, len(images))
            if image is not None:
                images.append(image)
        return images

    async def get_variant_hero(self, product_id: str, variant_id: str) -> ImageRef | None:
        data = await self._graphql(_VARIANT_HERO_QUERY, {"variantId": variant_id})
        variant = data.get("productVariant")
        if variant is None:
            raise CatalogError(f"Variant {variant_id} not found")
        nodes = _media_nodes(variant, f"Variant {variant_id}")
        return _image_from_node(nodes[0], 0) if nodes else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_media(self, product_id: str, images: list[ImageRef]) -> list[str]:
        if not images:
            return []
        media = [
            {"mediaContentType": "IMAGE", "originalSource": image.url, "alt": image.alt_text or ""}
            for image in images
        ]
        data = await self._graphql(_CREATE_MEDIA, {"productId": product_id, "media": media})
        body = data.get("productCreateMedia") or {}
        self._raise_user_errors("productCreateMedia", body)
        created = [node["id"] for node in body.get("media") or [] if isinstance(node, dict) and node.get("id")]
        if len(created) != len(images):
            # Partial upload: the caller treats the whole rotation as failed
            raise CatalogError(f"productCreateMedia created {len(created)} of {len(images)} images")
        logger.info("Created %d media on %s", len(created), product_id)
        return created

    async def delete_media(self, product_id: str, media_ids: list[str]) -> None:
        if not media_ids:
            return
        data = await self._graphql(_DELETE_MEDIA, {"productId": product_id, "mediaIds": media_ids})
        self._raise_user_errors("productDeleteMedia", data.get("productDeleteMedia") or {})
        logger.info("Deleted %d media from %s", len(media_ids), product_id)

    async def reorder_media(self, product_id: str, media_ids: list[str]) -> None:
        if not media_ids:
            return
        moves = [{"id": media_id, "newPosition": str(index)} for index, media_id in enumerate(media_ids)]
        data = await self._graphql(_REORDER_MEDIA, {"productId": product_id, "moves": moves})
        self._raise_user_errors("productReorderMedia", data.get("productReorderMedia") or {})

    async def set_variant_hero(self, product_id: str, variant_id: str, media_id: str) -> None:
        data = await self._graphql(
            _SET_VARIANT_HERO,
            {"productId": product_id, "variants": [{"id": variant_id, "mediaId": media_id}]},
        )
        self._raise_user_errors("productVariantsBulkUpdate", data.get("productVariantsBulkUpdate") or {})


def get_catalog() -> CatalogClient:
    """Dependency: the configured catalog client."""
    return ShopifyCatalogClient(
        shop_domain=settings.CATALOG_SHOP_DOMAIN,
        access_token=settings.CATALOG_ACCESS_TOKEN,
    )
