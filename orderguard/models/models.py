"""
OrderGuard — ORM Models
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship

from orderguard.services.db import Base


def _utcnow():
    return datetime.now(timezone.utc)


def _uuid4():
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------
class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_phone_key_created", "phone_key", "created_at"),
        Index("ix_orders_billing_phone_created", "billing_phone", "created_at"),
        Index("ix_orders_ip_created", "ip_address", "created_at"),
        Index("ix_orders_address_key_created", "address_key", "created_at"),
        Index("ix_orders_status", "status"),
    )

    id: str = Column(String(36), primary_key=True, default=_uuid4)
    external_id: str = Column(String(128), unique=True, nullable=True)   # storefront order number
    billing_phone: str = Column(String(32), nullable=True)               # as submitted
    phone_key: str = Column(String(11), nullable=True)                   # canonical 01XXXXXXXXX or null
    ip_address: str = Column(String(45), nullable=True)
    device_id: str = Column(String(256), nullable=True)
    user_agent: str = Column(Text, nullable=True)
    first_name: str = Column(String(128), nullable=True)
    last_name: str = Column(String(128), nullable=True)
    address_1: str = Column(String(255), nullable=True)
    address_2: str = Column(String(255), nullable=True)
    city: str = Column(String(128), nullable=True)
    postcode: str = Column(String(32), nullable=True)
    address_key: str = Column(String(512), nullable=True)                # normalised address_1|city|postcode
    status: str = Column(String(32), default="processing")               # no wc- prefix
    total: float = Column(Float, default=0.0)
    created_at: datetime = Column(DateTime(timezone=True), default=_utcnow)
    updated_at: datetime = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    score = relationship(
        "OrderScore", back_populates="order", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


# ---------------------------------------------------------------------------
# OrderScore  (1-to-1 with Order)
# ---------------------------------------------------------------------------
class OrderScore(Base):
    __tablename__ = "order_scores"

    id: str = Column(String(36), primary_key=True, default=_uuid4)
    order_id: str = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False)
    percentage: int = Column(Integer, nullable=False)                    # 0 – 100
    signals: list = Column(JSON, default=list)                           # FraudSignal dicts
    reason: str = Column(Text, nullable=True)
    scored_at: datetime = Column(DateTime(timezone=True), default=_utcnow)

    order = relationship("Order", back_populates="score")


# ---------------------------------------------------------------------------
# BlockEntry  (administrator-maintained blocklist)
# ---------------------------------------------------------------------------
class BlockEntry(Base):
    __tablename__ = "block_entries"
    __table_args__ = (
        UniqueConstraint("type", "value", name="uq_block_entries_type_value"),
    )

    id: str = Column(String(36), primary_key=True, default=_uuid4)
    type: str = Column(String(16), nullable=False)                       # phone | ip | device
    value: str = Column(String(256), nullable=False)
    note: str = Column(Text, nullable=True)
    created_by: str = Column(String(128), nullable=True)
    created_at: datetime = Column(DateTime(timezone=True), default=_utcnow)


# ---------------------------------------------------------------------------
# BlockedAttempt  (immutable append-only)
# ---------------------------------------------------------------------------
class BlockedAttempt(Base):
    __tablename__ = "blocked_attempts"
    __table_args__ = (
        Index("ix_blocked_attempts_created", "created_at"),
        Index("ix_blocked_attempts_type_created", "type", "created_at"),
    )

    id: str = Column(String(36), primary_key=True, default=_uuid4)
    type: str = Column(String(64), nullable=False)                       # phone_cooldown | blocklist_phone | …
    phone: str = Column(String(32), nullable=True)
    name: str = Column(String(256), nullable=True)
    ip_address: str = Column(String(45), nullable=True)
    user_agent: str = Column(Text, nullable=True)
    detail: str = Column(Text, nullable=True)
    extra: dict = Column(JSON, default=dict)
    created_at: datetime = Column(DateTime(timezone=True), default=_utcnow)
