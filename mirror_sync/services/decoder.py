import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union
from pydantic import ValidationError
from mirror_sync.schemas.messages import (
    CarbonLotEvent,
    OrderEvent,
    ProofAdded,
    SettlementCompleted,
    Unrecognized,
    scalar_text,
    topic_message_adapter,
)
from mirror_sync.schemas.mirror import RawMirrorMessage

logger = logging.getLogger(__name__)

DecodedMessage = Union[ProofAdded, OrderEvent, CarbonLotEvent, SettlementCompleted, Unrecognized]


@dataclass(frozen=True)
class DecodedEnvelope:
    """
    Result of decoding one mirror message.

    ``payload`` is only set when the content parsed as a JSON object; the
    correlation fields are only ever extracted from it, so a raw envelope has
    all of them set to None.
    """
    raw_text: str
    payload: Optional[dict]
    message: DecodedMessage
    message_type: Optional[str] = None
    lot_id: Optional[str] = None
    order_id: Optional[str] = None
    proof_type: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def is_structured(self) -> bool:
        return self.payload is not None


MAX_PAYLOAD_DEPTH = 64


def decode_message_bytes(encoded: str) -> str:
    """Base64 -> UTF-8 text. Content that is not valid base64 is kept as-is."""
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("message is not valid base64, storing it undecoded")
        return encoded
    return data.decode("utf-8", errors="replace")


def _nesting_exceeds(value: Any, limit: int) -> bool:
    stack = [(value, 1)]
    while stack:
        current, depth = stack.pop()
        if isinstance(current, dict):
            children = current.values()
        elif isinstance(current, list):
            children = current
        else:
            continue
        if depth > limit:
            return True
        stack.extend((child, depth + 1) for child in children)
    return False


def _raw_envelope(text: str) -> DecodedEnvelope:
    return DecodedEnvelope(raw_text=text, payload=None, message=Unrecognized(raw=text))


def decode(raw: RawMirrorMessage) -> DecodedEnvelope:
    text = decode_message_bytes(raw.message)
    try:
        payload = json.loads(text)
    except (ValueError, RecursionError):
        logger.warning(f"failed to parse message {raw.topic_id}-{raw.sequence_number} as JSON, keeping raw text")
        return _raw_envelope(text)

    if not isinstance(payload, dict):
        logger.warning(f"message {raw.topic_id}-{raw.sequence_number} is JSON but not an object, keeping raw text")
        return _raw_envelope(text)

    if _nesting_exceeds(payload, MAX_PAYLOAD_DEPTH):
        # must stay serializable by the JSON payload column
        logger.warning(f"message {raw.topic_id}-{raw.sequence_number} nests deeper than "
                       f"{MAX_PAYLOAD_DEPTH} levels, keeping raw text")
        return _raw_envelope(text)

    message_type = scalar_text(payload.get("type"))
    try:
        message = topic_message_adapter.validate_python(payload)
    except ValidationError:
        message = Unrecognized(raw=text, type=message_type)

    return DecodedEnvelope(
        raw_text=text,
        payload=payload,
        message=message,
        message_type=message_type,
        lot_id=scalar_text(payload.get("lotId")),
        order_id=scalar_text(payload.get("orderId")),
        proof_type=scalar_text(payload.get("proofType")) or scalar_text(payload.get("type")),
        user_id=scalar_text(payload.get("userId")) or scalar_text(payload.get("submittedBy")),
    )
