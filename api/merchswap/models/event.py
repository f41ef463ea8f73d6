import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, Integer, Numeric, String, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from merchswap.models.base import Base, JSONType, UTCDateTime, utcnow
from merchswap.models.experiment import Case


class EventType(str, enum.Enum):
    IMPRESSION = "IMPRESSION"
    ADD_TO_CART = "ADD_TO_CART"
    PURCHASE = "PURCHASE"


class Event(Base):
    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False
    )
    session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[EventType] = mapped_column(Enum(EventType, name="event_type"), nullable=False)
    active_case: Mapped[Case] = mapped_column(Enum(Case, name="image_case"), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    variant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    revenue: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=True)
    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    order_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="client")
    # "metadata" is reserved on declarative classes
    details: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_events_experiment_case_type", "experiment_id", "active_case", "event_type"),
        Index(
            "uq_events_impression_session",
            "experiment_id",
            "session_id",
            "active_case",
            unique=True,
            postgresql_where=text("event_type = 'IMPRESSION'"),
            sqlite_where=text("event_type = 'IMPRESSION'"),
        ),
        Index(
            "uq_events_purchase_order",
            "experiment_id",
            "order_id",
            unique=True,
            postgresql_where=text("event_type = 'PURCHASE'"),
            sqlite_where=text("event_type = 'PURCHASE'"),
        ),
    )
