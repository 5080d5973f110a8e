import logging
from typing import Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from mirror_sync.core.exceptions import OrderAlreadyExistsError, OrderNotFoundError
from mirror_sync.models.order import Order, OrderStatus
from mirror_sync.schemas.order import CreateOrderRequest, UpdateOrderRequest

logger = logging.getLogger(__name__)


class CRUDOrder:
    async def get_order(self, db: AsyncSession, order_id: str) -> Optional[Order]:
        result = await db.execute(select(Order).where(Order.order_id == order_id))
        return result.scalar_one_or_none()

    async def create_order(self, db: AsyncSession, data: CreateOrderRequest) -> Order:
        order = Order(
            order_id=data.order_id,
            lot_id=data.lot_id,
            buyer_id=data.buyer_id,
            tons=data.tons,
            status=OrderStatus.PENDING,
        )
        try:
            db.add(order)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning(f"order {data.order_id} already exists")
            raise OrderAlreadyExistsError(data.order_id)
        await db.refresh(order)
        logger.info(f"created order {order.order_id} for lot {order.lot_id}")
        return order

    async def update_order(self, db: AsyncSession, order_id: str, data: UpdateOrderRequest) -> Order:
        order = await self.get_order(db, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        for name, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(order, name, value)
        await db.commit()
        await db.refresh(order)
        logger.info(f"updated order {order_id}")
        return order


crud_order = CRUDOrder()
