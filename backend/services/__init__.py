"""
Services module for remote collaborators of the element library
"""

from .studio_api import StudioApiClient
from .registration_client import RegistrationClient
from .storage_backend import StorageBackend, get_storage_backend

__all__ = ["StudioApiClient", "RegistrationClient", "StorageBackend", "get_storage_backend"]
