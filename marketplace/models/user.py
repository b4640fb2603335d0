from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from marketplace.models.database import Base


class User(Base):
    """Account row owned by the identity service; read-only here."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    display_name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="buyer")  # buyer | seller | admin
    is_active = Column(Boolean, default=True, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
