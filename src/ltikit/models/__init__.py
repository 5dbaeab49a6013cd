"""
Data models for ltikit.

SQLAlchemy tables for consumers, providers and protocol state, plus the
Pydantic payloads exchanged with the tool.
"""

from .base import Base, TimestampMixin, utcnow
from .consumer import (
    Consumer,
    ConsumerCreate,
    ConsumerKeyModel,
    ConsumerModel,
    ConsumerUpdate,
)
from .launch import DeeplinkData, LaunchData
from .provider import (
    Provider,
    ProviderCreate,
    ProviderKeyModel,
    ProviderModel,
    ProviderUpdate,
)
from .session import ConsumerLogin, ConsumerLoginModel, OauthNonceModel

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "utcnow",
    # Consumer
    "Consumer",
    "ConsumerCreate",
    "ConsumerKeyModel",
    "ConsumerModel",
    "ConsumerUpdate",
    # Provider
    "Provider",
    "ProviderCreate",
    "ProviderKeyModel",
    "ProviderModel",
    "ProviderUpdate",
    # Protocol state
    "ConsumerLogin",
    "ConsumerLoginModel",
    "OauthNonceModel",
    # Launch payloads
    "DeeplinkData",
    "LaunchData",
]
