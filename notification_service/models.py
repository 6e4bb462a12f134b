from sqlalchemy import Column, Integer, String, BigInteger, DateTime, Text, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class MemberMail(Base):
    """Inbox message shown to a member"""
    __tablename__ = "member_mail"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    event_id = Column(String(64), unique=True, nullable=False)
    guild_id = Column(String(64), index=True, nullable=False)
    user_id = Column(String(32), index=True, nullable=False)
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=False)
    author_name = Column(String(100))
    author_avatar = Column(String(300))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
