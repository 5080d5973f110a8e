from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from mirror_sync.core.idempotency import IdempotentRoute, require_idempotency_key
from mirror_sync.crud.order import crud_order
from mirror_sync.db.session import get_db_session
from mirror_sync.schemas.order import CreateOrderRequest, OrderResponse, UpdateOrderRequest

router = APIRouter(prefix="/orders", route_class=IdempotentRoute)


@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(data: CreateOrderRequest,
                       idempotency_key: str = Depends(require_idempotency_key),
                       db: AsyncSession = Depends(get_db_session)):
    return await crud_order.create_order(db, data)


@router.put("/{order_id}", response_model=OrderResponse)
async def update_order(order_id: str, data: UpdateOrderRequest, db: AsyncSession = Depends(get_db_session)):
    return await crud_order.update_order(db, order_id, data)
