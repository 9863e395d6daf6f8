"""
SQLAlchemy models for selfnear.

The chain is the source of truth for verifications; the database only keeps
an operational log of verification attempts.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def generate_uuid():
    """Generate a UUID string for primary keys."""
    return str(uuid.uuid4())


def utc_now():
    """Generate timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class VerificationAttempt(Base):
    """
    One registration or re-verification pass.
    """

    __tablename__ = "verification_attempts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(64))  # NEAR account ids are at most 64 chars
    flow = Column(String(20), nullable=False)  # 'register' or 'verify_stored'
    verified = Column(Boolean, default=False, nullable=False)
    error_code = Column(String(50))
    error_message = Column(Text)
    steps = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index("idx_attempt_account", "account_id"),
        Index("idx_attempt_created", "created_at"),
    )

    def __repr__(self):
        return f"<VerificationAttempt(id={self.id}, account={self.account_id}, verified={self.verified})>"

    def to_dict(self):
        return {
            "id": self.id,
            "accountId": self.account_id,
            "flow": self.flow,
            "verified": self.verified,
            "code": self.error_code,
            "error": self.error_message,
            "steps": self.steps,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
