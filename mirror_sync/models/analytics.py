from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from mirror_sync.db.base import Base, BigIntPK, JSONType
from mirror_sync.models.mixins.timestamp import utcnow


class AnalyticsRecord(Base):
    __tablename__ = "analytics"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    metric: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    value: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
