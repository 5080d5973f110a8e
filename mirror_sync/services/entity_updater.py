import logging
from decimal import Decimal
from typing import Optional, Protocol
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from mirror_sync.models.analytics import AnalyticsRecord
from mirror_sync.models.carbon_lot import CarbonLot
from mirror_sync.models.order import Order
from mirror_sync.models.proof import Proof

logger = logging.getLogger(__name__)


class EntityUpdater(Protocol):
    """
    Keyed, best-effort updates of the entities derived from mirror events.
    The update methods return False when no row matched the key.
    """

    async def update_order(self, order_id: str, patch: dict) -> bool: ...

    async def update_carbon_lot(self, lot_id: str, patch: dict) -> bool: ...

    async def update_proof_by_lot_and_type(self, lot_id: str, proof_type: str, patch: dict) -> bool: ...

    async def log_analytics(self, metric: str, value: Optional[Decimal], metadata: dict) -> None: ...


class SqlEntityUpdater:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _update(self, statement) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(statement)
            await db.commit()
            return result.rowcount > 0

    async def update_order(self, order_id: str, patch: dict) -> bool:
        return await self._update(update(Order).where(Order.order_id == order_id).values(**patch))

    async def update_carbon_lot(self, lot_id: str, patch: dict) -> bool:
        return await self._update(update(CarbonLot).where(CarbonLot.lot_id == lot_id).values(**patch))

    async def update_proof_by_lot_and_type(self, lot_id: str, proof_type: str, patch: dict) -> bool:
        return await self._update(
            update(Proof)
            .where(Proof.lot_id == lot_id)
            .where(Proof.proof_type == proof_type)
            .values(**patch)
        )

    async def log_analytics(self, metric: str, value: Optional[Decimal], metadata: dict) -> None:
        async with self.session_factory() as db:
            db.add(AnalyticsRecord(metric=metric, value=value, details=metadata))
            await db.commit()
