from sqlalchemy import Column, DateTime, String, Text

from .db import Base


class BurnedToken(Base):
    __tablename__ = "burned_tokens"

    token_id = Column(String, primary_key=True)
    burned_at = Column(DateTime(timezone=True), index=True, nullable=False)
    burned_by = Column(String, nullable=False, default="anonymous")
    meta = Column("metadata", Text, nullable=True)  # JSON string
