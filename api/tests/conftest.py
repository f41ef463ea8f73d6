"""Shared fixtures: a throwaway SQLite database per test and an in-memory catalog.

Async code is driven from plain pytest tests through a private event loop.
"""

import asyncio
import os
from datetime import UTC, datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from merchswap.core.errors import CatalogError
from merchswap.media.diff import ImageRef
from merchswap.models import Base
from merchswap.models.experiment import Case, Experiment, ExperimentStatus, Scope, VariantCase
from merchswap.services.catalog import CatalogClient

PRODUCT = "gid://shopify/Product/1001"
VARIANT_RED = "gid://shopify/ProductVariant/2001"
VARIANT_BLUE = "gid://shopify/ProductVariant/2002"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeCatalog(CatalogClient):
    """In-memory storefront: product galleries plus one hero per variant."""

    def __init__(self) -> None:
        self.galleries: dict[str, list[ImageRef]] = {}
        self.heroes: dict[tuple[str, str], ImageRef | None] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_products: set[str] = set()
        self.fail_message = "Shopify returned 503"
        self.delay_seconds = 0.0
        # Awaited inside create_media; lets tests interleave a concurrent writer
        self.during_mutation = None
        self._next_id = 1

    def _media_id(self) -> str:
        media_id = f"gid://shopify/MediaImage/{self._next_id}"
        self._next_id += 1
        return media_id

    def seed_gallery(self, product_id: str, urls: list[str]) -> list[ImageRef]:
        self.galleries[product_id] = [
            ImageRef(url=url, media_id=self._media_id(), position=index) for index, url in enumerate(urls)
        ]
        return list(self.galleries[product_id])

    def gallery_urls(self, product_id: str) -> list[str]:
        return [image.url for image in self.galleries.get(product_id, [])]

    def media_ids(self, product_id: str) -> set[str]:
        return {image.media_id for image in self.galleries.get(product_id, [])}

    async def _enter(self, operation: str, product_id: str) -> None:
        self.calls.append((operation, product_id))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if product_id in self.fail_products:
            raise CatalogError(self.fail_message)

    async def list_product_media(self, product_id: str) -> list[ImageRef]:
        await self._enter("list_product_media", product_id)
        return [image.model_copy() for image in self.galleries.get(product_id, [])]

    async def get_variant_hero(self, product_id: str, variant_id: str) -> ImageRef | None:
        await self._enter("get_variant_hero", product_id)
        return self.heroes.get((product_id, variant_id))

    async def create_media(self, product_id: str, images: list[ImageRef]) -> list[str]:
        if not images:
            return []
        await self._enter("create_media", product_id)
        if self.during_mutation is not None:
            await self.during_mutation()
        gallery = self.galleries.setdefault(product_id, [])
        created = []
        for image in images:
            media_id = self._media_id()
            gallery.append(image.model_copy(update={"media_id": media_id}))
            created.append(media_id)
        return created

    async def delete_media(self, product_id: str, media_ids: list[str]) -> None:
        await self._enter("delete_media", product_id)
        doomed = set(media_ids)
        self.galleries[product_id] = [
            image for image in self.galleries.get(product_id, []) if image.media_id not in doomed
        ]

    async def reorder_media(self, product_id: str, media_ids: list[str]) -> None:
        await self._enter("reorder_media", product_id)
        rank = {media_id: index for index, media_id in enumerate(media_ids)}
        self.galleries[product_id].sort(key=lambda image: rank.get(image.media_id, len(rank)))

    async def set_variant_hero(self, product_id: str, variant_id: str, media_id: str) -> None:
        await self._enter("set_variant_hero", product_id)
        image = next(image for image in self.galleries.get(product_id, []) if image.media_id == media_id)
        self.heroes[(product_id, variant_id)] = image


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'merchswap.db'}"


@pytest.fixture
def run(database_url):
    """Run ``scenario(session_factory)`` against a fresh database and return its result."""

    def _run(scenario):
        async def _main():
            engine = create_async_engine(database_url)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            session_factory = async_sessionmaker(engine, expire_on_commit=False)
            try:
                return await scenario(session_factory)
            finally:
                await engine.dispose()

        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(_main())
        finally:
            loop.close()

    return _run


def _images(urls: list[str]) -> list[dict]:
    return [ImageRef(url=url, position=index).model_dump() for index, url in enumerate(urls)]


@pytest.fixture
def make_experiment():
    """Insert an experiment directly, RUNNING and due at ``NOW`` unless overridden."""

    async def _make(session_factory, **overrides) -> Experiment:
        variants = overrides.pop("variants", [])
        base_urls = overrides.pop("base_urls", ["https://cdn.shop.com/base-1.jpg", "https://cdn.shop.com/base-2.jpg"])
        test_urls = overrides.pop("test_urls", ["https://cdn.shop.com/test-1.jpg", "https://cdn.shop.com/test-2.jpg"])
        fields = {
            "tenant_id": "demo.myshopify.com",
            "name": "Lifestyle vs studio",
            "product_id": PRODUCT,
            "scope": Scope.PRODUCT,
            "status": ExperimentStatus.RUNNING,
            "current_case": Case.BASE,
            "base_images": _images(base_urls),
            "test_images": _images(test_urls),
            "rotation_interval_hours": 24.0,
            "next_rotation_at": NOW - timedelta(minutes=1),
        }
        fields.update(overrides)
        async with session_factory() as db:
            experiment = Experiment(**fields)
            experiment.variant_cases = [VariantCase(**variant) for variant in variants]
            db.add(experiment)
            await db.commit()
            await db.refresh(experiment)
            return experiment

    return _make
