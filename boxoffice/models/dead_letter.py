"""
Dead-letter record for tasks that exhausted retries or failed permanently
"""

from sqlalchemy import Column, String, Integer, Text, Enum, JSON
import enum

from boxoffice.models.base import BaseModel, UTCDateTime, utcnow


class DeadLetterStatus(str, enum.Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    REQUEUED = "REQUEUED"
    DISCARDED = "DISCARDED"


class DeadLetterTask(BaseModel):
    __tablename__ = "dead_letter_tasks"

    task_name = Column(String(100), nullable=False, index=True)
    job_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    error_type = Column(String(100), nullable=False)
    error_message = Column(Text, nullable=True)
    status = Column(
        Enum(DeadLetterStatus),
        default=DeadLetterStatus.PENDING_REVIEW,
        nullable=False,
        index=True
    )
    failed_at = Column(UTCDateTime, nullable=False, default=utcnow)
    resolved_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return f"<DeadLetterTask(id={self.id}, task={self.task_name}, status={self.status})>"
