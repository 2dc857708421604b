"""User model definitions."""

import enum
from dataclasses import dataclass

from sqlalchemy import Column, Integer, String
from backend.database import Base


class Role(str, enum.Enum):
    PATIENT = "patient"
    PROVIDER = "provider"
    ADMIN = "admin"


class User(Base):
    """Represents an application user."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    name = Column(String, nullable=False, default="")
    hashed_password = Column(String)
    role = Column(String, nullable=False)  # patient/provider/admin


@dataclass(frozen=True)
class Actor:
    """An already-authenticated caller."""
    user_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN
