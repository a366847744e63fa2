"""Publications file parsing, verification and caching."""

from ksi.modules.publications.models import PublicationsFile, PublicationsFileHeader
from ksi.modules.publications.service import (
    PublicationsFileHandler,
    parse_utc_date,
    verify_publications_file,
)

__all__ = [
    "PublicationsFile",
    "PublicationsFileHeader",
    "PublicationsFileHandler",
    "parse_utc_date",
    "verify_publications_file",
]
