"""Lock history model.

Rows are purely observational: nothing reads them to decide whether a lock
is held. Ownership lives in the database server's named-lock table only.
"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from namedlock.models import Base

STATUS_ACQUIRED = "acquired"
STATUS_RELEASED = "released"


class LockHistory(Base):
    """One acquire/release cycle of a named lock by one session.

    A row is inserted with status "acquired" when a session obtains the lock
    and flipped to "released" (with released_at set) when the same session
    gives it back.
    """
    __tablename__ = "lock_history"

    id = Column(Integer, primary_key=True)
    lock_name = Column(String(255), nullable=False, index=True)
    session_id = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=STATUS_ACQUIRED)
    acquired_at = Column(DateTime, server_default=func.current_timestamp(), nullable=False)
    released_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lock_name": self.lock_name,
            "session_id": self.session_id,
            "status": self.status,
            "acquired_at": self.acquired_at.isoformat() if self.acquired_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
        }
