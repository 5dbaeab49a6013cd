"""
Consumer models.

A consumer is a platform (LMS) registered with this tool.  Its OAuth 1.0
secret and RSA keypair live in a separate ``lti_consumer_keys`` row joined
by the consumer ``key``, so the secret never travels with the consumer
record itself.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class ConsumerModel(Base, TimestampMixin):
    """A registered platform."""

    __tablename__ = "lti_consumers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    lti13: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # LTI 1.3
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    platform_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    deployment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    keyset_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    token_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    auth_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    # Observed from launches; advisory only
    tc_product: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tc_version: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tc_guid: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tc_name: Mapped[str | None] = mapped_column(String(255), nullable=True)


class ConsumerKeyModel(Base):
    """OAuth secret and RSA keypair for one consumer."""

    __tablename__ = "lti_consumer_keys"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    public: Mapped[str | None] = mapped_column(Text, nullable=True)
    private: Mapped[str | None] = mapped_column(Text, nullable=True)


# ============================================================================
# Pydantic Models (for API/validation)
# ============================================================================


class ConsumerBase(BaseModel):
    """Fields shared by consumer creation and reads."""

    name: str = Field(..., min_length=1, max_length=255)
    lti13: bool = False
    client_id: str | None = None
    platform_id: str | None = None
    deployment_id: str | None = None
    keyset_url: str | None = None
    token_url: str | None = None
    auth_url: str | None = None


class ConsumerCreate(ConsumerBase):
    """Schema for registering a consumer. Key and secret are generated when omitted."""

    key: str | None = Field(default=None, min_length=1, max_length=255)
    secret: str | None = Field(default=None, min_length=1, max_length=255)


class ConsumerUpdate(BaseModel):
    """Schema for updating a consumer. All fields optional."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    lti13: bool | None = None
    client_id: str | None = None
    platform_id: str | None = None
    deployment_id: str | None = None
    keyset_url: str | None = None
    token_url: str | None = None
    auth_url: str | None = None


class Consumer(ConsumerBase):
    """Consumer as returned by storage."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    key: str
    tc_product: str | None = None
    tc_version: str | None = None
    tc_guid: str | None = None
    tc_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
