"""
KSI client: hash-tree based signatures, extending and policy verification.

The :class:`KSI` facade covers the common operations; the packages under
``ksi.core`` and ``ksi.modules`` expose the building blocks.
"""

from ksi.client import KSI
from ksi.core.config import Settings, get_settings
from ksi.core.crypto.hashing import DataHash, DataHasher, HashAlgorithm, hash_data
from ksi.core.errors import KSIError
from ksi.modules.signature.models import KSISignature, PublicationData, PublicationRecord
from ksi.modules.verification.schemas import VerificationResult

__version__ = "0.1.0"

__all__ = [
    "KSI",
    "Settings",
    "get_settings",
    "DataHash",
    "DataHasher",
    "HashAlgorithm",
    "hash_data",
    "KSIError",
    "KSISignature",
    "PublicationData",
    "PublicationRecord",
    "VerificationResult",
]
