"""Event ingestion with case attribution and per-type deduplication.

- IMPRESSION: at most one per (experiment, session, case).
- ADD_TO_CART: never deduplicated; frequency is itself the signal.
- PURCHASE: one row per (experiment, order id). The fast client signal
  usually arrives first without revenue; the order webhook then finds that
  row by order id alone and enriches it in place, even if the experiment
  has since been paused or completed. If the webhook wins the race it
  inserts, and the late client signal becomes a duplicate.

Both uniqueness rules are also enforced by partial unique indexes, so two
writers racing past the existence check end with one row: the loser's
insert fails, it rolls back and resolves against the winner's row.
"""

import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, RootModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.errors import DuplicateError, ValidationError
from merchswap.core.identifiers import normalize_order_id, normalize_product_id, normalize_variant_id
from merchswap.models.event import Event, EventType
from merchswap.models.experiment import Case, Experiment, ExperimentStatus, Scope
from merchswap.services.attribution import resolve_active_case, running_experiments_for_product

logger = logging.getLogger(__name__)

# Cart/order attribute the storefront writes at checkout
ATTRIBUTION_ATTRIBUTE = "MerchSwap"


# ---------------------------------------------------------------------------
# Event shapes
# ---------------------------------------------------------------------------

class _TrackedEvent(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)
    product_id: str = Field(min_length=1)
    variant_id: str | None = None
    # Omitted by instrumentation that did not query attribution first
    experiment_id: uuid.UUID | None = None
    active_case: Case | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ImpressionEvent(_TrackedEvent):
    event_type: Literal["IMPRESSION"] = "IMPRESSION"


class AddToCartEvent(_TrackedEvent):
    event_type: Literal["ADD_TO_CART"] = "ADD_TO_CART"
    quantity: int | None = Field(default=None, ge=0)


class PurchaseEvent(_TrackedEvent):
    event_type: Literal["PURCHASE"] = "PURCHASE"
    order_id: str | None = None
    order_number: str | None = None
    revenue: float | None = Field(default=None, ge=0)
    quantity: int | None = Field(default=None, ge=0)


TrackEvent = Annotated[ImpressionEvent | AddToCartEvent | PurchaseEvent, Field(discriminator="event_type")]


class TrackRequest(RootModel[TrackEvent]):
    """Request body wrapper for a single tracked event."""


class OrderLineItem(BaseModel):
    product_id: str | int | None = None
    variant_id: str | int | None = None
    price: float = 0.0
    quantity: int = 0


class NoteAttribute(BaseModel):
    name: str
    value: str | None = None


class OrderPayload(BaseModel):
    """The subset of an orders/paid webhook body that attribution needs."""

    id: str | int
    order_number: str | int | None = None
    name: str | None = None
    line_items: list[OrderLineItem] = Field(default_factory=list)
    note_attributes: list[NoteAttribute] = Field(default_factory=list)


class RecordResult(BaseModel):
    accepted: bool
    event_id: uuid.UUID | None = None
    duplicate: bool = False
    enriched: bool = False
    experiment_id: uuid.UUID | None = None
    active_case: Case | None = None
    reason: str | None = None


def _parse_attribution(order: OrderPayload) -> dict[str, Any] | None:
    for attribute in order.note_attributes:
        if attribute.name != ATTRIBUTION_ATTRIBUTE or not attribute.value:
            continue
        try:
            meta = json.loads(attribute.value)
        except ValueError:
            logger.warning("Unparseable %s attribute on order %s", ATTRIBUTION_ATTRIBUTE, order.id)
            return None
        return meta if isinstance(meta, dict) else None
    return None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class EventIngestionService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def record(self, event: TrackEvent) -> RecordResult:
        """Validate, attribute and store one client event.

        Raises ``ValidationError`` for unknown or archived experiments and for
        product/variant mismatches. Replays come back as ``duplicate=True``
        with the original event's id.
        """
        product_id = normalize_product_id(event.product_id)
        variant_id = normalize_variant_id(event.variant_id)
        experiment_id, active_case = event.experiment_id, event.active_case

        if experiment_id is None:
            resolved = await resolve_active_case(self.db, product_id, variant_id)
            if not resolved.is_active:
                return RecordResult(accepted=False, reason="no_active_experiment")
            experiment_id = resolved.experiment_id
            active_case = active_case or resolved.variant_case or resolved.current_case

        experiment = await self._get_experiment(experiment_id)
        self._validate_target(experiment, product_id, variant_id)
        if active_case is None:
            active_case = experiment.current_case

        row = Event(
            experiment_id=experiment_id,
            session_id=event.session_id,
            event_type=EventType(event.event_type),
            active_case=active_case,
            product_id=product_id,
            variant_id=variant_id,
            details=event.metadata or None,
            source="client",
        )

        if isinstance(event, ImpressionEvent):
            try:
                event_id = await self._insert_impression(row)
            except DuplicateError as dup:
                return RecordResult(
                    accepted=True,
                    event_id=dup.existing_id,
                    duplicate=True,
                    experiment_id=experiment_id,
                    active_case=active_case,
                )
            return RecordResult(accepted=True, event_id=event_id, experiment_id=experiment_id, active_case=active_case)

        if isinstance(event, PurchaseEvent):
            row.revenue = event.revenue
            row.quantity = event.quantity
            row.order_number = event.order_number
            row.order_id = normalize_order_id(event.order_id)
            if row.order_id is not None:
                return await self._upsert_purchase(row)
        else:
            row.quantity = event.quantity

        self.db.add(row)
        await self.db.flush()
        return RecordResult(accepted=True, event_id=row.id, experiment_id=experiment_id, active_case=active_case)

    async def record_order(self, order: OrderPayload, tenant_id: str | None = None) -> RecordResult:
        """Enrich or attribute a paid order's PURCHASE event.

        A PURCHASE already stored for the order id is enriched in place,
        whatever state its experiment is in now. Otherwise the experiment and
        case come from the order's attribution attribute when present, or
        from the newest RUNNING experiment on the first line item's product,
        at whatever case it currently shows.
        """
        order_id = normalize_order_id(order.id)
        revenue = round(sum(item.price * item.quantity for item in order.line_items), 2)
        quantity = sum(item.quantity for item in order.line_items)
        order_number = order.name or (str(order.order_number) if order.order_number is not None else None)
        details = {"line_item_count": len(order.line_items)}

        stored = await self._find_order_purchases(order_id, tenant_id)
        if stored:
            incoming = {
                "revenue": revenue,
                "quantity": quantity,
                "order_number": order_number,
                "source": "webhook",
                "details": details,
            }
            results = [await self._enrich_stored(existing, incoming) for existing in stored]
            return results[0]

        experiment, active_case = await self._attribute_order(order, tenant_id)
        if experiment is None:
            logger.info("Order %s matches no experiment; not tracked", order_id)
            return RecordResult(accepted=False, reason="no_matching_experiment")

        line = next(
            (item for item in order.line_items if normalize_product_id(item.product_id) == experiment.product_id),
            None,
        )
        if line is None:
            logger.info("Order %s has no line item for %s", order_id, experiment.product_id)
            return RecordResult(accepted=False, reason="no_matching_experiment")
        variant_id = normalize_variant_id(line.variant_id)
        try:
            self._validate_target(experiment, experiment.product_id, variant_id)
        except ValidationError as exc:
            logger.info("Order %s not attributable: %s", order_id, exc)
            return RecordResult(accepted=False, reason="no_matching_experiment")

        row = Event(
            experiment_id=experiment.id,
            session_id=f"order:{order_id}",
            event_type=EventType.PURCHASE,
            active_case=active_case,
            product_id=experiment.product_id,
            variant_id=variant_id,
            revenue=revenue,
            quantity=quantity,
            order_id=order_id,
            order_number=order_number,
            source="webhook",
            details=details,
        )
        return await self._upsert_purchase(row)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def _get_experiment(self, experiment_id: uuid.UUID) -> Experiment:
        experiment = await self.db.get(Experiment, experiment_id)
        if experiment is None:
            raise ValidationError(f"Unknown experiment {experiment_id}")
        if experiment.status == ExperimentStatus.ARCHIVED:
            raise ValidationError(f"Experiment {experiment_id} is archived")
        return experiment

    @staticmethod
    def _validate_target(experiment: Experiment, product_id: str | None, variant_id: str | None) -> None:
        if product_id != experiment.product_id:
            raise ValidationError(f"Product {product_id} is not the target of experiment {experiment.id}")
        if experiment.scope is Scope.VARIANT:
            covered = {vc.variant_id for vc in experiment.variant_cases}
            if variant_id is None or variant_id not in covered:
                raise ValidationError(f"Variant {variant_id} is not part of experiment {experiment.id}")

    async def _attribute_order(
        self, order: OrderPayload, tenant_id: str | None
    ) -> tuple[Experiment | None, Case | None]:
        meta = _parse_attribution(order)
        if meta and meta.get("experiment_id"):
            try:
                experiment = await self._get_experiment(uuid.UUID(str(meta["experiment_id"])))
            except (ValueError, ValidationError) as exc:
                logger.warning("Order %s carries unusable attribution: %s", order.id, exc)
            else:
                try:
                    case = Case(meta["active_case"]) if meta.get("active_case") else experiment.current_case
                except ValueError:
                    case = experiment.current_case
                return experiment, case

        if not order.line_items:
            return None, None
        product_id = normalize_product_id(order.line_items[0].product_id)
        if product_id is None:
            return None, None
        for experiment in await running_experiments_for_product(self.db, product_id):
            if tenant_id is None or experiment.tenant_id == tenant_id:
                return experiment, experiment.current_case
        return None, None

    # ------------------------------------------------------------------
    # Dedup
    # ------------------------------------------------------------------

    async def _find_impression(self, experiment_id: uuid.UUID, session_id: str, case: Case) -> Event | None:
        result = await self.db.execute(
            select(Event).where(
                Event.experiment_id == experiment_id,
                Event.session_id == session_id,
                Event.active_case == case,
                Event.event_type == EventType.IMPRESSION,
            )
        )
        return result.scalars().first()

    async def _find_purchase(self, experiment_id: uuid.UUID, order_id: str) -> Event | None:
        result = await self.db.execute(
            select(Event).where(
                Event.experiment_id == experiment_id,
                Event.order_id == order_id,
                Event.event_type == EventType.PURCHASE,
            )
        )
        return result.scalars().first()

    async def _find_order_purchases(self, order_id: str | None, tenant_id: str | None) -> list[Event]:
        """Every stored PURCHASE for ``order_id``, oldest first, across experiments."""
        if order_id is None:
            return []
        query = select(Event).where(Event.order_id == order_id, Event.event_type == EventType.PURCHASE)
        if tenant_id is not None:
            query = query.join(Experiment, Experiment.id == Event.experiment_id).where(
                Experiment.tenant_id == tenant_id
            )
        result = await self.db.execute(query.order_by(Event.created_at, Event.id))
        return list(result.scalars().all())

    async def _insert_impression(self, row: Event) -> uuid.UUID:
        """Insert ``row`` or raise ``DuplicateError`` naming the stored impression."""
        experiment_id, session_id, case = row.experiment_id, row.session_id, row.active_case
        existing = await self._find_impression(experiment_id, session_id, case)
        if existing is not None:
            raise DuplicateError(existing.id)

        self.db.add(row)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._find_impression(experiment_id, session_id, case)
            if existing is None:
                raise
            raise DuplicateError(existing.id) from None
        return row.id

    async def _upsert_purchase(self, row: Event) -> RecordResult:
        """Insert the purchase if its order is new, otherwise enrich the stored one."""
        experiment_id, order_id, active_case = row.experiment_id, row.order_id, row.active_case
        incoming = {
            "revenue": row.revenue,
            "quantity": row.quantity,
            "order_number": row.order_number,
            "source": row.source,
            "details": row.details,
        }

        existing = await self._find_purchase(experiment_id, order_id)
        if existing is None:
            self.db.add(row)
            try:
                await self.db.flush()
            except IntegrityError:
                await self.db.rollback()
                existing = await self._find_purchase(experiment_id, order_id)
                if existing is None:
                    raise
            else:
                return RecordResult(
                    accepted=True, event_id=row.id, experiment_id=experiment_id, active_case=active_case
                )

        return await self._enrich_stored(existing, incoming)

    async def _enrich_stored(self, existing: Event, incoming: dict[str, Any]) -> RecordResult:
        enriched = self._enrich(existing, incoming)
        if enriched:
            await self.db.flush()
            logger.info("Enriched purchase %s for order %s", existing.id, existing.order_id)
        return RecordResult(
            accepted=True,
            event_id=existing.id,
            duplicate=True,
            enriched=enriched,
            experiment_id=existing.experiment_id,
            active_case=existing.active_case,
        )

    @staticmethod
    def _enrich(existing: Event, incoming: dict[str, Any]) -> bool:
        """Fill revenue/quantity/order number from a later report of the same order."""
        changed = False
        revenue = incoming["revenue"]
        if revenue is not None and (existing.revenue is None or revenue > 0) and revenue != existing.revenue:
            existing.revenue = revenue
            changed = True
        if incoming["quantity"] is not None and incoming["quantity"] != existing.quantity:
            existing.quantity = incoming["quantity"]
            changed = True
        if incoming["order_number"] and incoming["order_number"] != existing.order_number:
            existing.order_number = incoming["order_number"]
            changed = True
        if changed:
            details = dict(existing.details or {})
            details.update(incoming["details"] or {})
            if incoming["source"] == "webhook":
                details["enriched_by_webhook"] = True
            existing.details = details
            existing.updated_at = datetime.now(UTC)
        return changed
