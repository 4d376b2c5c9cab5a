"""Registered user: an identity that may own personal keys."""

from pydantic import EmailStr
from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin


class User(TimestampMixin, SQLModel, table=True):
    __tablename__ = "users"

    # Derived from the email (see app.core.security.derive_user_id)
    id: str = Field(primary_key=True, max_length=320)
    email: str = Field(max_length=320, nullable=False, unique=True, index=True)
    display_name: str = Field(default="", max_length=255)


# ── Pydantic schemas ─────────────────────────────────────────

class UserCreate(SQLModel):
    email: EmailStr
    display_name: str = Field(default="", max_length=255)


class UserRead(SQLModel):
    id: str
    email: str
    display_name: str
