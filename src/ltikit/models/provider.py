"""
Provider models.

A provider is an external tool that this deployment launches as a
platform.  Its OAuth 1.0 secret lives in ``lti_provider_keys``.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class ProviderModel(Base, TimestampMixin):
    """A registered tool."""

    __tablename__ = "lti_providers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    lti13: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    launch_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    domain: Mapped[str] = mapped_column(String(1024), nullable=False)
    custom: Mapped[str | None] = mapped_column(Text, nullable=True)  # key=value lines
    use_section: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class ProviderKeyModel(Base):
    """OAuth secret for one provider."""

    __tablename__ = "lti_provider_keys"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)


# ============================================================================
# Pydantic Models (for API/validation)
# ============================================================================


class ProviderBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    lti13: bool = False
    launch_url: str = Field(..., min_length=1)
    domain: str = Field(..., min_length=1)
    custom: str | None = None
    use_section: bool = False


class ProviderCreate(ProviderBase):
    """Schema for registering a provider. Key and secret are generated when omitted."""

    key: str | None = Field(default=None, min_length=1, max_length=255)
    secret: str | None = Field(default=None, min_length=1, max_length=255)


class ProviderUpdate(BaseModel):
    """Schema for updating a provider. A new ``key`` moves its secret along with it."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    lti13: bool | None = None
    key: str | None = Field(default=None, min_length=1, max_length=255)
    secret: str | None = Field(default=None, min_length=1, max_length=255)
    launch_url: str | None = None
    domain: str | None = None
    custom: str | None = None
    use_section: bool | None = None


class Provider(ProviderBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    key: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def custom_params(self) -> dict[str, str]:
        """Parse the ``key=value`` lines of ``custom``."""
        params: dict[str, str] = {}
        for line in (self.custom or "").splitlines():
            name, sep, value = line.partition("=")
            if sep and name.strip():
                params[name.strip()] = value.strip()
        return params
