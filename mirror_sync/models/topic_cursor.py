from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column
from mirror_sync.db.base import Base
from mirror_sync.models.mixins import TimestampMixin


class TopicCursor(Base, TimestampMixin):
    """Last sequence number processed for a topic. Only ever moves forward."""
    __tablename__ = "topic_cursors"
    topic_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
