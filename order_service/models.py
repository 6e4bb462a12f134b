import uuid
from sqlalchemy import (Column, Integer, String, BigInteger, DateTime, Numeric, Text, JSON,
                        ForeignKey, Index, func)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

def _uuid() -> str:
    return str(uuid.uuid4())

class Server(Base):
    """A tenant: one community server with its own orders, wallets and roles"""
    __tablename__ = "servers"
    id = Column(String(64), primary_key=True, default=_uuid)
    discord_id = Column(String(32), unique=True, index=True)
    slug = Column(String(64), unique=True)

class StoreOrder(Base):
    __tablename__ = "store_orders"
    id = Column(String(36), primary_key=True, default=_uuid)
    server_id = Column(String(64), ForeignKey("servers.id"), index=True, nullable=False)
    user_id = Column(String(32), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending|paid|failed|refunded
    item_title = Column(String(200))
    role_id = Column(String(32))  # single-role orders created before line items existed
    duration_days = Column(Integer)
    applied_at = Column(DateTime(timezone=True))  # set only once every role is granted
    expires_at = Column(DateTime(timezone=True))
    failure_reason = Column(String(500))
    failure_code = Column(Integer)
    failure_response = Column(Text)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    items = relationship("StoreOrderItem", order_by="StoreOrderItem.position", lazy="selectin")

    __table_args__ = (Index("ix_store_orders_server_status", "server_id", "status"),)

class StoreOrderItem(Base):
    __tablename__ = "store_order_items"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("store_orders.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    title = Column(String(200))
    role_id = Column(String(32))
    duration_days = Column(Integer)

class MemberWallet(Base):
    __tablename__ = "member_wallets"
    guild_id = Column(String(64), primary_key=True)
    user_id = Column(String(32), primary_key=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

class WalletLedger(Base):
    """Append-only; never updated or deleted"""
    __tablename__ = "wallet_ledger"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    guild_id = Column(String(64), nullable=False)
    user_id = Column(String(32), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    type = Column(String(32), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    meta = Column("metadata", JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_wallet_ledger_owner", "guild_id", "user_id", "created_at"),)
