"""Stored value model - durable key/value records (local cart snapshots)."""
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func
from storefront.database import Base


class StoredValue(Base):
    """
    One JSON document per key.

    Cart snapshots are stored under ``{CART_STORAGE_KEY}:{session_id}``.
    """

    __tablename__ = 'stored_value'

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<StoredValue(key={self.key})>"
