"""
Onboarding state models and durable identity persistence.

The only state that outlives a process is the user identifier, kept in a
key-value store (local JSON file, or an S3 object encrypted with Fernet).
"""

from .identity_store import IdentityStore
from .kv_store import JsonFileStore, KeyValueStoreError, S3KeyValueStore
from .models import Identity, WorkflowError, WorkflowStep

__all__ = [
    "Identity",
    "IdentityStore",
    "JsonFileStore",
    "KeyValueStoreError",
    "S3KeyValueStore",
    "WorkflowError",
    "WorkflowStep",
]
