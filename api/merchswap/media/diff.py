"""Media diff engine: what has to change on the catalog to show a target gallery.

Two images are the same image when their normalized URLs match, whatever
catalog media id either side currently holds. The diff never re-uploads an
image that is already live; it reattaches the live media id instead.
"""

from __future__ import annotations

from urllib.parse import urlsplit

from pydantic import BaseModel


class ImageRef(BaseModel):
    """One image in an ordered gallery (or a single variant hero)."""

    url: str
    media_id: str | None = None
    position: int = 0
    alt_text: str | None = None

    @property
    def key(self) -> str:
        return normalize_url(self.url)


class MediaDiff(BaseModel):
    to_keep: list[ImageRef]
    to_add: list[ImageRef]
    to_delete: list[ImageRef]
    needs_reorder: bool

    @property
    def is_noop(self) -> bool:
        return not self.to_add and not self.to_delete and not self.needs_reorder


def normalize_url(url: str) -> str:
    """Identity of an image URL: scheme, host and path, lowercased.

    Query strings (CDN version stamps, resize hints) and fragments are dropped.

    >>> normalize_url("HTTPS://cdn.Shop.com/files/Hero.jpg?v=17")
    'https://cdn.shop.com/files/hero.jpg'
    """
    parts = urlsplit(url.strip())
    if not parts.scheme and not parts.netloc:
        return parts.path.lower()
    return f"{parts.scheme}://{parts.netloc}{parts.path}".lower()


def dedupe(images: list[ImageRef]) -> list[ImageRef]:
    """Collapse duplicate URLs, keeping first-seen order.

    When duplicates disagree, the entry that carries a catalog media id wins.
    Entries with an empty URL are dropped.
    """
    by_key: dict[str, ImageRef] = {}
    for image in images:
        if not image.url.strip():
            continue
        key = image.key
        seen = by_key.get(key)
        if seen is None:
            by_key[key] = image
        elif seen.media_id is None and image.media_id is not None:
            # keep the slot of the first occurrence, take the uploaded copy
            by_key[key] = image.model_copy(update={"position": seen.position})
    return list(by_key.values())


def diff(current: list[ImageRef], target: list[ImageRef]) -> MediaDiff:
    """Compute the catalog mutation that turns ``current`` into ``target``.

    Parameters
    ----------
    current : list[ImageRef]
        What is live on the catalog right now, in display order.
    target : list[ImageRef]
        What should be live after the change, in display order.

    Returns
    -------
    MediaDiff
        ``to_keep``: target entries already live, carrying the live media id.
        ``to_add``: target entries that must be created.
        ``to_delete``: live entries absent from the target that have a media id.
        ``needs_reorder``: the ordered URL sequences differ.
    """
    live = dedupe(current)
    wanted = dedupe(target)
    live_by_key = {image.key: image for image in live}
    wanted_keys = {image.key for image in wanted}

    to_keep: list[ImageRef] = []
    to_add: list[ImageRef] = []
    for image in wanted:
        match = live_by_key.get(image.key)
        if match is None:
            to_add.append(image.model_copy())
        else:
            media_id = match.media_id if match.media_id is not None else image.media_id
            to_keep.append(image.model_copy(update={"media_id": media_id}))

    to_delete = [
        image.model_copy()
        for image in live
        if image.key not in wanted_keys and image.media_id is not None
    ]

    needs_reorder = [image.key for image in live] != [image.key for image in wanted]

    return MediaDiff(
        to_keep=to_keep,
        to_add=to_add,
        to_delete=to_delete,
        needs_reorder=needs_reorder,
    )
