"""
LTI 1.0/1.1 and 1.3 protocol engine.

Lets an application act as an LTI tool (accept launches, post grades,
answer deep-linking requests, register dynamically) and as an LTI platform
(launch registered tools, receive their Basic Outcomes grades).
"""

from ltikit.errors import (
    ConfigurationError,
    LTIError,
    RecordNotFoundError,
    ReplayError,
    TrustError,
    UpstreamError,
    ValidationError,
)
from ltikit.models import Consumer, DeeplinkData, LaunchData, Provider
from ltikit.settings import Settings, get_settings
from ltikit.storage import LTIStorage
from ltikit.toolkit import LTIToolkit

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "Consumer",
    "DeeplinkData",
    "LTIError",
    "LTIStorage",
    "LTIToolkit",
    "LaunchData",
    "Provider",
    "RecordNotFoundError",
    "ReplayError",
    "Settings",
    "TrustError",
    "UpstreamError",
    "ValidationError",
    "get_settings",
]
