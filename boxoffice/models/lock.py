"""
Distributed lock rows for the relational lock backend
"""

from sqlalchemy import Column, String

from boxoffice.core.database import Base
from boxoffice.models.base import UTCDateTime


class DistributedLock(Base):
    __tablename__ = "distributed_locks"

    resource_key = Column(String(255), primary_key=True)
    token = Column(String(64), nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<DistributedLock(resource_key={self.resource_key}, expires_at={self.expires_at})>"
