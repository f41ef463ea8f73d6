import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, Integer, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from merchswap.models.base import Base, JSONType, UTCDateTime, utcnow
from merchswap.models.experiment import Case


class RotationTrigger(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"


class RotationHistoryEntry(Base):
    __tablename__ = "rotation_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # No FK: the audit trail outlives the experiment it describes
    experiment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    from_case: Mapped[Case] = mapped_column(Enum(Case, name="image_case"), nullable=False)
    to_case: Mapped[Case] = mapped_column(Enum(Case, name="image_case"), nullable=False)
    trigger: Mapped[RotationTrigger] = mapped_column(Enum(RotationTrigger, name="rotation_trigger"), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False, index=True
    )
