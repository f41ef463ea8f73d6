import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, Float, ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from merchswap.models.base import Base, JSONType, TimestampMixin, UTCDateTime


class ExperimentStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class Case(str, enum.Enum):
    BASE = "BASE"
    TEST = "TEST"

    @property
    def other(self) -> "Case":
        return Case.TEST if self is Case.BASE else Case.BASE


class Scope(str, enum.Enum):
    PRODUCT = "PRODUCT"
    VARIANT = "VARIANT"


class Experiment(TimestampMixin, Base):
    __tablename__ = "experiments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    variant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    scope: Mapped[Scope] = mapped_column(Enum(Scope, name="experiment_scope"), nullable=False, default=Scope.PRODUCT)
    status: Mapped[ExperimentStatus] = mapped_column(
        Enum(ExperimentStatus, name="experiment_status"), nullable=False, default=ExperimentStatus.DRAFT
    )
    current_case: Mapped[Case] = mapped_column(Enum(Case, name="image_case"), nullable=False, default=Case.BASE)
    # Lists of ImageRef dicts: {url, media_id, position, alt_text}
    base_images: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    test_images: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    rotation_interval_hours: Mapped[float] = mapped_column(Float, nullable=False, default=24.0)
    last_rotation_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_rotation_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_experiments_status_next_rotation_at", "status", "next_rotation_at"),
    )

    variant_cases: Mapped[list["VariantCase"]] = relationship(
        "VariantCase",
        back_populates="experiment",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="VariantCase.variant_id",
    )

    def images_for(self, case: Case) -> list[dict]:
        return self.base_images if case is Case.BASE else self.test_images


class VariantCase(Base):
    __tablename__ = "variant_cases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    variant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    base_hero_image: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    test_hero_image: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        UniqueConstraint("experiment_id", "variant_id", name="uq_variant_case_experiment_variant"),
    )

    experiment: Mapped[Experiment] = relationship("Experiment", back_populates="variant_cases")

    def hero_for(self, case: Case) -> dict | None:
        return self.base_hero_image if case is Case.BASE else self.test_hero_image
