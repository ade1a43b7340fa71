from datetime import datetime

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Lead(Base):
    """The slice of the lead record the media pipeline touches."""

    __tablename__ = "Lead"
    id = Column(String, primary_key=True)
    name = Column(String)
    email = Column(String)
    phone = Column(String, nullable=True)
    attachments = Column(Text, nullable=False, default="[]")  # JSON list of attachment dicts
    createdAt = Column(DateTime, default=datetime.utcnow)  # noqa: N815
    updatedAt = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)  # noqa: N815
