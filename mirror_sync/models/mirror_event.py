from datetime import datetime
from typing import Optional
from sqlalchemy import BigInteger, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from mirror_sync.db.base import Base, BigIntPK, JSONType
from mirror_sync.models.mixins.timestamp import utcnow


class MirrorEvent(Base):
    """
    Append-only record of one consensus message pulled from the mirror node.
    (topic_id, sequence_number) identifies a message; rows are never updated.
    """
    __tablename__ = "mirror_events"
    __table_args__ = (
        UniqueConstraint("topic_id", "sequence_number", name="uix_mirror_event_topic_sequence"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    topic_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    topic_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    consensus_timestamp: Mapped[str] = mapped_column(String(255), nullable=False)
    running_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    message_content: Mapped[str] = mapped_column(Text, nullable=False)
    parsed_message: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    message_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    lot_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    proof_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
