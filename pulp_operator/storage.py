"""
Storage policy gate.

Exactly one backend is expected among a named storage class, S3 object
storage and Azure blob storage. Only the storage class backend gets an
additional file-storage PVC.
"""
import enum
import logging
from typing import List, Optional

from pulp_operator.models import Descriptor

logger = logging.getLogger("pulp_operator.storage")


class StorageType(str, enum.Enum):
    AZURE = "Azure"
    S3 = "S3"
    STORAGE_CLASS = "StorageClass"
    NONE = "None"


# Check order. When several fields are populated the first one wins.
_BACKEND_FIELDS = (
    (StorageType.AZURE, "object_storage_azure_secret"),
    (StorageType.S3, "object_storage_s3_secret"),
    (StorageType.STORAGE_CLASS, "file_storage_storage_class"),
)


def configured_backends(descriptor: Descriptor) -> List[StorageType]:
    """All backends whose configuration field is populated, in check order."""
    return [backend for backend, field in _BACKEND_FIELDS if getattr(descriptor.spec, field)]


def storage_backend(descriptor: Descriptor, log: Optional[logging.Logger] = None,
                    warn: bool = True) -> StorageType:
    """
    The selected backend. Ambiguous configurations are reported when ``warn``
    is set; the pass reports them once, from the work list.
    """
    backends = configured_backends(descriptor)
    if not backends:
        return StorageType.NONE
    if warn and len(backends) > 1:
        (log or logger).warning(
            f"{descriptor.kind} {descriptor.name}: more than one storage backend configured "
            f"({', '.join(b.value for b in backends)}); using {backends[0].value}"
        )
    return backends[0]


def is_storage_class_backend(descriptor: Descriptor, log: Optional[logging.Logger] = None) -> bool:
    return storage_backend(descriptor, log) == StorageType.STORAGE_CLASS
