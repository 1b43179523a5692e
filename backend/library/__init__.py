"""
Element library package.

Tracks visual reference elements for video generation and keeps their
provider registration state in sync:
- Domain models and registration status
- Merge of fetched elements without losing registration progress
- Bounded, cancellable registration polling
- The ElementLibrary facade (library.facade) used by views
"""

__version__ = "0.1.0"

from .models import Element, RegistrationStatus, AssetType, AssetRef, RegistrationResult
from .errors import LibraryError, ErrorCode, RegistrationFailedError, is_transient
from .reconciler import merge
from .store import ElementStore
from .poll_loop import PollLoop, PollPolicy, CancellationToken

__all__ = [
    "Element",
    "RegistrationStatus",
    "AssetType",
    "AssetRef",
    "RegistrationResult",
    "LibraryError",
    "ErrorCode",
    "RegistrationFailedError",
    "is_transient",
    "merge",
    "ElementStore",
    "PollLoop",
    "PollPolicy",
    "CancellationToken",
]
