"""
SQLAlchemy model for the single active SIS credential set and its cached
access token.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.sql import func

from reportcard.core.database import Base

CREDENTIAL_ROW_ID = 1


class SISCredential(Base):
    """Upstream endpoint, client credentials and the last issued token."""

    __tablename__ = "sis_credentials"

    id = Column(Integer, primary_key=True, default=CREDENTIAL_ROW_ID)
    endpoint = Column(String(500), nullable=True)
    client_id = Column(String(255), nullable=True)
    client_secret = Column(String(255), nullable=True)
    school_id = Column(Integer, nullable=True)

    access_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
