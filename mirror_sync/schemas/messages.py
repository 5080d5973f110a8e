"""
Typed payloads carried on the consensus topics.

Every decoded payload becomes exactly one of the variants below, selected by
its ``type`` field. Anything else (unknown type, missing type, non-JSON
content) becomes ``Unrecognized``. Only ``type`` decides routing: the other
fields never fail validation, a value of the wrong shape is read as absent.
"""
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter


def scalar_text(value: Any) -> Optional[str]:
    """Text of a JSON string or number; None for anything else, including ""."""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    text = str(value)
    return text or None


ScalarText = Annotated[Optional[str], BeforeValidator(scalar_text)]


class _TopicMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)


class ProofAdded(_TopicMessage):
    type: Literal["PROOF_ADDED"]
    lot_id: ScalarText = Field(default=None, alias="lotId")
    proof_type: ScalarText = Field(default=None, alias="proofType")


class OrderEvent(_TopicMessage):
    type: Literal["ORDER_CREATED", "ORDER_DELIVERED", "ORDER_SETTLED"]
    order_id: ScalarText = Field(default=None, alias="orderId")


class CarbonLotEvent(_TopicMessage):
    type: Literal["CARBON_LOT_CREATED", "CARBON_LOT_UPDATED"]
    lot_id: ScalarText = Field(default=None, alias="lotId")


class SettlementCompleted(_TopicMessage):
    type: Literal["SETTLEMENT_COMPLETED"]
    order_id: ScalarText = Field(default=None, alias="orderId")
    amount: Any = None  # as published

    @property
    def amount_value(self) -> Optional[Decimal]:
        """``amount`` as a finite Decimal, or None when it is not numeric."""
        if isinstance(self.amount, bool) or not isinstance(self.amount, (str, int, float)):
            return None
        try:
            value = Decimal(str(self.amount).strip())
        except InvalidOperation:
            return None
        return value if value.is_finite() else None


class Unrecognized(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw: str
    type: Optional[str] = None


TopicMessage = Annotated[
    Union[ProofAdded, OrderEvent, CarbonLotEvent, SettlementCompleted],
    Field(discriminator="type"),
]

topic_message_adapter: TypeAdapter[TopicMessage] = TypeAdapter(TopicMessage)
