from sqlalchemy import Column, Integer, String, Text

from .db import Base


class EncryptedFile(Base):
    __tablename__ = "encrypted_files"

    cid = Column(String, primary_key=True)
    data = Column(Text, nullable=False)  # base64 ciphertext including the GCM tag
    size = Column(Integer, nullable=False)
    created_at = Column(String, nullable=False)
