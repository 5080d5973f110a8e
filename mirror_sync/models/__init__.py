from .mixins import TimestampMixin as TimestampMixin
from .mirror_event import MirrorEvent as MirrorEvent
from .topic_cursor import TopicCursor as TopicCursor
from .idempotency_key import IdempotencyKey as IdempotencyKey
from .order import Order as Order, OrderStatus as OrderStatus
from .carbon_lot import CarbonLot as CarbonLot
from .proof import Proof as Proof
from .analytics import AnalyticsRecord as AnalyticsRecord

__all__ = ["TimestampMixin", "MirrorEvent", "TopicCursor", "IdempotencyKey",
           "Order", "OrderStatus", "CarbonLot", "Proof", "AnalyticsRecord"]
