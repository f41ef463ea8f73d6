"""Catalog identifier normalization.

The storefront reports bare numeric ids ("8123") while the Admin API speaks
GIDs ("gid://shopify/Product/8123"). Everything stored or compared goes
through these helpers first.
"""

import re

_GID_PREFIX = "gid://shopify/"
_DIGITS = re.compile(r"(\d+)$")


def _normalize(raw: str | int | None, resource: str) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip()
    if not value:
        return None
    if value.startswith(_GID_PREFIX):
        return value
    match = _DIGITS.search(value)
    if match is None:
        return value
    return f"{_GID_PREFIX}{resource}/{match.group(1)}"


def normalize_product_id(raw: str | int | None) -> str | None:
    return _normalize(raw, "Product")


def normalize_variant_id(raw: str | int | None) -> str | None:
    return _normalize(raw, "ProductVariant")


def normalize_order_id(raw: str | int | None) -> str | None:
    return _normalize(raw, "Order")
