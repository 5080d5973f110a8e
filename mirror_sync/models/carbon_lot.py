from typing import Optional
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from mirror_sync.db.base import Base, BigIntPK
from mirror_sync.models.mixins import TimestampMixin


class CarbonLot(Base, TimestampMixin):
    __tablename__ = "carbon_lots"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    lot_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    project_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    last_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_consensus_timestamp: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
