from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class RawMirrorMessage(BaseModel):
    """One entry of the mirror node's /topics/{id}/messages response."""
    model_config = ConfigDict(extra="ignore")

    sequence_number: int = Field(ge=0)
    consensus_timestamp: str
    message: str = ""  # base64
    running_hash: str = ""
    topic_id: Optional[str] = None
    payer_account_id: Optional[str] = None


class MirrorMessagesPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: List[RawMirrorMessage] = Field(default_factory=list)
    links: dict = Field(default_factory=dict)
