import logging
from enum import Enum
from mirror_sync.models.mirror_event import MirrorEvent
from mirror_sync.schemas.messages import CarbonLotEvent, OrderEvent, ProofAdded, SettlementCompleted
from mirror_sync.services.decoder import DecodedEnvelope
from mirror_sync.services.entity_updater import EntityUpdater

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    APPLIED = "APPLIED"
    NOT_FOUND = "NOT_FOUND"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class EventDispatcher:
    """
    Routes a stored event to at most one derived-entity handler, keyed on the
    decoded message variant. Never raises: a failing handler is logged and
    reported as FAILED so the rest of the batch keeps going.
    """

    def __init__(self, updater: EntityUpdater):
        self.updater = updater
        self._handlers = {
            ProofAdded: self._handle_proof_added,
            OrderEvent: self._handle_order_event,
            CarbonLotEvent: self._handle_carbon_lot_event,
            SettlementCompleted: self._handle_settlement_completed,
        }

    async def dispatch(self, envelope: DecodedEnvelope, event: MirrorEvent) -> DispatchOutcome:
        handler = self._handlers.get(type(envelope.message))
        if handler is None:
            logger.info(f"event {event.event_id}: unknown message type {envelope.message_type}, not routed")
            return DispatchOutcome.SKIPPED
        try:
            outcome = await handler(envelope.message, event)
        except Exception as e:
            logger.error(f"event {event.event_id}: handler for {envelope.message_type} failed: {e}", exc_info=True)
            return DispatchOutcome.FAILED
        if outcome is DispatchOutcome.NOT_FOUND:
            logger.warning(f"event {event.event_id}: {envelope.message_type} references a missing entity "
                           f"(lotId={envelope.lot_id} orderId={envelope.order_id})")
        return outcome

    @staticmethod
    def _result(found: bool) -> DispatchOutcome:
        return DispatchOutcome.APPLIED if found else DispatchOutcome.NOT_FOUND

    async def _handle_proof_added(self, message: ProofAdded, event: MirrorEvent) -> DispatchOutcome:
        if not message.lot_id or not message.proof_type:
            return DispatchOutcome.SKIPPED
        found = await self.updater.update_proof_by_lot_and_type(message.lot_id, message.proof_type, {
            "event_id": event.event_id,
            "consensus_timestamp": event.consensus_timestamp,
            "confirmed": True,
        })
        return self._result(found)

    async def _handle_order_event(self, message: OrderEvent, event: MirrorEvent) -> DispatchOutcome:
        if not message.order_id:
            return DispatchOutcome.SKIPPED
        found = await self.updater.update_order(message.order_id, {
            "last_event_id": event.event_id,
            "last_consensus_timestamp": event.consensus_timestamp,
        })
        return self._result(found)

    async def _handle_carbon_lot_event(self, message: CarbonLotEvent, event: MirrorEvent) -> DispatchOutcome:
        if not message.lot_id:
            return DispatchOutcome.SKIPPED
        found = await self.updater.update_carbon_lot(message.lot_id, {
            "last_event_id": event.event_id,
            "last_consensus_timestamp": event.consensus_timestamp,
        })
        return self._result(found)

    async def _handle_settlement_completed(self, message: SettlementCompleted, event: MirrorEvent) -> DispatchOutcome:
        await self.updater.log_analytics("settlement_confirmed", message.amount_value, {
            "orderId": message.order_id,
            "amount": message.amount,
            "eventId": event.event_id,
            "consensusTimestamp": event.consensus_timestamp,
        })
        return DispatchOutcome.APPLIED
