"""
Interactive API storage provider.

Wires the host handshake, state reconciliation and attachment-aware state
storage behind the provider operations (load, save, open saved).
"""

from .capabilities import Capabilities, INTERACTIVE_API_CAPABILITIES
from .config import ProviderOptions
from .handler import InteractiveApiProvider, ProviderClient
from .models import CloudContent, CloudMetadata, OpenSavedParams, ProviderResult, RunData

__all__ = [
    "Capabilities",
    "CloudContent",
    "CloudMetadata",
    "INTERACTIVE_API_CAPABILITIES",
    "InteractiveApiProvider",
    "OpenSavedParams",
    "ProviderClient",
    "ProviderOptions",
    "ProviderResult",
    "RunData",
]
