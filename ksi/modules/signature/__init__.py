"""KSI signature object model and hash chain arithmetic."""

from ksi.modules.signature.chains import ChainResult, aggregate_chain, aggregate_chains
from ksi.modules.signature.models import (
    AggregationChainLink,
    AggregationHashChain,
    CalendarAuthenticationRecord,
    CalendarChainLink,
    CalendarHashChain,
    Identity,
    IdentityMetadata,
    KSISignature,
    LinkDirection,
    PublicationData,
    PublicationRecord,
    RFC3161Record,
    SignatureData,
)

__all__ = [
    "KSISignature",
    "AggregationHashChain",
    "AggregationChainLink",
    "LinkDirection",
    "IdentityMetadata",
    "Identity",
    "CalendarHashChain",
    "CalendarChainLink",
    "CalendarAuthenticationRecord",
    "SignatureData",
    "PublicationData",
    "PublicationRecord",
    "RFC3161Record",
    "ChainResult",
    "aggregate_chain",
    "aggregate_chains",
]
