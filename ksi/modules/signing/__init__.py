"""Signing and block signing."""

from ksi.modules.signing.block_signer import BlockSigner
from ksi.modules.signing.service import SigningService

__all__ = ["SigningService", "BlockSigner"]
