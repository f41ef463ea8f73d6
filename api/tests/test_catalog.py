"""Tests for the Shopify catalog client against a mocked Admin GraphQL endpoint."""

import asyncio
import json

import httpx
import pytest

from merchswap.core.errors import CatalogError, ExternalServiceError
from merchswap.media.diff import ImageRef
from merchswap.services.catalog import ShopifyCatalogClient

PRODUCT = "gid://shopify/Product/1001"


def _client(handler):
    return ShopifyCatalogClient(
        shop_domain="demo.myshopify.com",
        access_token="shpat_test",
        api_version="2025-01",
        transport=httpx.MockTransport(handler),
    )


def _run(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestReads:
    def test_list_product_media(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "data": {
                        "product": {
                            "media": {
                                "nodes": [
                                    {"id": "gid://shopify/MediaImage/1", "alt": "front", "image": {"url": "https://cdn/a.jpg"}},
                                    {"id": "gid://shopify/Video/9", "alt": None},
                                    {"id": "gid://shopify/MediaImage/2", "alt": None, "image": {"url": "https://cdn/b.jpg"}},
                                ]
                            }
                        }
                    }
                },
            )

        images = _run(_client(handler).list_product_media(PRODUCT))

        assert [image.url for image in images] == ["https://cdn/a.jpg", "https://cdn/b.jpg"]
        assert [image.position for image in images] == [0, 1]
        assert images[0].alt_text == "front"
        request = seen[0]
        assert str(request.url) == "https://demo.myshopify.com/admin/api/2025-01/graphql.json"
        assert request.headers["X-Shopify-Access-Token"] == "shpat_test"
        assert json.loads(request.content)["variables"] == {"productId": PRODUCT}

    def test_missing_product(self):
        handler = lambda request: httpx.Response(200, json={"data": {"product": None}})  # noqa: E731
        with pytest.raises(CatalogError, match="not found"):
            _run(_client(handler).list_product_media(PRODUCT))

    def test_variant_without_media(self):
        handler = lambda request: httpx.Response(  # noqa: E731
            200, json={"data": {"productVariant": {"media": {"nodes": []}}}}
        )
        assert _run(_client(handler).get_variant_hero(PRODUCT, "gid://shopify/ProductVariant/1")) is None


class TestMutations:
    def test_create_media_returns_ids_in_order(self):
        def handler(request):
            media = json.loads(request.content)["variables"]["media"]
            assert [item["originalSource"] for item in media] == ["https://cdn/a.jpg", "https://cdn/b.jpg"]
            return httpx.Response(
                200,
                json={
                    "data": {
                        "productCreateMedia": {
                            "media": [{"id": "gid://shopify/MediaImage/7"}, {"id": "gid://shopify/MediaImage/8"}],
                            "mediaUserErrors": [],
                        }
                    }
                },
            )

        ids = _run(
            _client(handler).create_media(PRODUCT, [ImageRef(url="https://cdn/a.jpg"), ImageRef(url="https://cdn/b.jpg")])
        )
        assert ids == ["gid://shopify/MediaImage/7", "gid://shopify/MediaImage/8"]

    def test_partial_create_is_an_error(self):
        handler = lambda request: httpx.Response(  # noqa: E731
            200,
            json={"data": {"productCreateMedia": {"media": [{"id": "gid://shopify/MediaImage/7"}], "mediaUserErrors": []}}},
        )
        with pytest.raises(CatalogError, match="created 1 of 2"):
            _run(_client(handler).create_media(PRODUCT, [ImageRef(url="https://cdn/a.jpg"), ImageRef(url="https://cdn/b.jpg")]))

    def test_user_errors_are_raised(self):
        handler = lambda request: httpx.Response(  # noqa: E731
            200,
            json={
                "data": {
                    "productDeleteMedia": {
                        "deletedMediaIds": None,
                        "mediaUserErrors": [{"field": ["mediaIds"], "message": "Media does not exist"}],
                    }
                }
            },
        )
        with pytest.raises(CatalogError, match="Media does not exist") as excinfo:
            _run(_client(handler).delete_media(PRODUCT, ["gid://shopify/MediaImage/404"]))
        assert excinfo.value.user_errors[0]["field"] == ["mediaIds"]

    def test_empty_mutations_skip_the_network(self):
        def handler(request):
            raise AssertionError("no request expected")

        client = _client(handler)
        assert _run(client.create_media(PRODUCT, [])) == []
        _run(client.delete_media(PRODUCT, []))
        _run(client.reorder_media(PRODUCT, []))


class TestTransportFailures:
    def test_http_error_status(self):
        handler = lambda request: httpx.Response(503, text="unavailable")  # noqa: E731
        with pytest.raises(ExternalServiceError, match="Catalog request failed"):
            _run(_client(handler).list_product_media(PRODUCT))

    def test_graphql_errors(self):
        handler = lambda request: httpx.Response(200, json={"errors": [{"message": "Throttled"}]})  # noqa: E731
        with pytest.raises(CatalogError, match="Throttled"):
            _run(_client(handler).list_product_media(PRODUCT))

    def test_non_json_body(self):
        handler = lambda request: httpx.Response(200, text="<html>maintenance</html>")  # noqa: E731
        with pytest.raises(CatalogError, match="non-JSON"):
            _run(_client(handler).list_product_media(PRODUCT))

    def test_malformed_media_connection(self):
        handler = lambda request: httpx.Response(200, json={"data": {"product": {"title": "Tee"}}})  # noqa: E731
        with pytest.raises(CatalogError, match="malformed"):
            _run(_client(handler).list_product_media(PRODUCT))

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CatalogError, match="connection refused"):
            _run(_client(handler).list_product_media(PRODUCT))
