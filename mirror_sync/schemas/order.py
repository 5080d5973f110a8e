from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from mirror_sync.models.order import OrderStatus


class CreateOrderRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=255)
    lot_id: str = Field(min_length=1, max_length=255)
    buyer_id: str = Field(min_length=1, max_length=255)
    tons: Decimal = Field(gt=0)


class UpdateOrderRequest(BaseModel):
    status: Optional[OrderStatus] = None
    tons: Optional[Decimal] = Field(default=None, gt=0)


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    lot_id: str
    buyer_id: str
    tons: Decimal
    status: OrderStatus
    last_event_id: Optional[str] = None
    last_consensus_timestamp: Optional[str] = None
    created_at: datetime
