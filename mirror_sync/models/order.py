from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import Numeric, String, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column
from mirror_sync.db.base import Base, BigIntPK
from mirror_sync.models.mixins import TimestampMixin


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ESCROWED = "ESCROWED"
    DELIVERED = "DELIVERED"
    SETTLED = "SETTLED"
    CANCELLED = "CANCELLED"


class Order(Base, TimestampMixin):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    lot_id: Mapped[str] = mapped_column(String(255), nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tons: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False)
    last_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_consensus_timestamp: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
