"""
Short-lived protocol state: OAuth nonces and pending LTI 1.3 logins.

Both tables are append-mostly and swept by age, see ``ltikit.expiration``.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class OauthNonceModel(Base):
    """A consumed OAuth 1.0 nonce. Existence of the row is proof of replay."""

    __tablename__ = "lti_oauth_nonces"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    nonce: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (Index("idx_lti_oauth_nonces_created", "created_at"),)


class ConsumerLoginModel(Base):
    """An OIDC login awaiting its launch. Consumed on first lookup."""

    __tablename__ = "lti_consumer_logins"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    state: Mapped[str] = mapped_column(String(255), primary_key=True, unique=True)
    nonce: Mapped[str] = mapped_column(String(255), primary_key=True)
    iss: Mapped[str] = mapped_column(String(1024), nullable=False)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False)
    keyset_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (Index("idx_lti_consumer_logins_created", "created_at"),)


class ConsumerLogin(BaseModel):
    """A pending login as read back from storage."""

    model_config = ConfigDict(from_attributes=True)

    key: str
    state: str
    nonce: str
    iss: str
    client_id: str
    keyset_url: str
    created_at: datetime | None = None
