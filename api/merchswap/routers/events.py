from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.database import get_db
from merchswap.services.events import EventIngestionService, OrderPayload, RecordResult, TrackRequest

router = APIRouter(tags=["events"])


@router.post("/track", response_model=RecordResult)
async def track_event(body: TrackRequest, db: AsyncSession = Depends(get_db)) -> RecordResult:
    """Record one storefront event.

    Duplicates (a repeated impression, a re-reported order) are a success
    response carrying the original event id. Events for a product with no
    running experiment come back with ``accepted=false``.
    """
    return await EventIngestionService(db).record(body.root)


@router.post("/webhooks/orders-paid", response_model=RecordResult)
async def orders_paid(
    order: OrderPayload,
    shop_domain: str | None = Header(default=None, alias="X-Shopify-Shop-Domain"),
    db: AsyncSession = Depends(get_db),
) -> RecordResult:
    """Enrich (or create) the PURCHASE event for a paid order.

    Always answers 200 for a well-formed order so the sender does not retry
    orders that simply belong to no experiment.
    """
    return await EventIngestionService(db).record_order(order, tenant_id=shop_domain)
