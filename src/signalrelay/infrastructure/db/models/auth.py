# src/signalrelay/infrastructure/db/models/auth.py
"""
SQLAlchemy ORM models for subscribers and their Telegram chat destinations.
Account management itself lives outside this service; only what matching
and delivery need is modelled here.
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, BigInteger, ForeignKey, Text, func, true, false
from sqlalchemy.orm import relationship
from .base import Base


class User(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=True)
    name = Column(String(255), nullable=True)
    # 'active' | 'inactive' | 'suspended'
    status = Column(String(20), nullable=False, default='active', server_default='active')

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    telegram_link = relationship("TelegramLink", back_populates="user", uselist=False, cascade="all, delete-orphan")

    @property
    def is_active(self) -> bool:
        return self.status == 'active'

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email!r}, status='{self.status}')>"


class TelegramLink(Base):
    """The chat a user receives alerts in, plus its delivery health."""
    __tablename__ = 'telegram_links'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, unique=True, index=True)
    chat_id = Column(BigInteger, unique=True, nullable=False, index=True)
    username = Column(String(255), nullable=True)

    is_active = Column(Boolean, default=True, server_default=true(), nullable=False)
    is_blocked = Column(Boolean, default=False, server_default=false(), nullable=False, index=True)
    blocked_at = Column(DateTime(timezone=True), nullable=True)
    block_reason = Column(Text, nullable=True)

    linked_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_delivery_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="telegram_link")

    @property
    def is_reachable(self) -> bool:
        return bool(self.is_active and not self.is_blocked)

    def __repr__(self):
        return (
            f"<TelegramLink(user_id={self.user_id}, chat_id={self.chat_id}, "
            f"active={self.is_active}, blocked={self.is_blocked})>"
        )
