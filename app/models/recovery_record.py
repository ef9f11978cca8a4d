from sqlalchemy import JSON, Column, DateTime, Integer, String, func

from app.db.base import Base


class RecoveryRecord(Base):
    """Durable row behind the SQL record store; one per token or session item."""
    __tablename__ = "recovery_records"

    namespace = Column(String(32), primary_key=True)
    key = Column(String(128), primary_key=True)
    owner = Column(String(320), nullable=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
