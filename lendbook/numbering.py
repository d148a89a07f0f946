"""
Document Numbering

Human-readable numbers such as ``LN-2025-0001`` for loans, invoices,
contracts and receipts. Numbers are allocated from storage sequences, so
they are unique even when several writers allocate at once.
"""

import re
from datetime import datetime, timezone
from typing import Optional, Tuple

from .storage import StorageInterface


NUMBER_PATTERN = re.compile(r'^(?P<prefix>[A-Za-z0-9_]+)-(?P<year>\d{4})-(?P<seq>\d{4,})$')


def format_document_number(prefix: str, year: int, sequence: int) -> str:
    """Build ``PREFIX-YEAR-NNNN`` (sequence zero-padded to at least 4 digits)"""
    return f"{prefix}-{year}-{sequence:04d}"


def parse_document_number(number: str) -> Tuple[str, int, int]:
    """
    Split a document number into (prefix, year, sequence)

    Raises:
        ValueError: If the number is not in ``PREFIX-YEAR-NNNN`` form
    """
    match = NUMBER_PATTERN.match(number or "")
    if not match:
        raise ValueError(f"Not a document number: {number!r}")
    return match.group('prefix'), int(match.group('year')), int(match.group('seq'))


class DocumentNumberer:
    """Allocates sequential document numbers, one counter per (kind, prefix, year)"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def next_number(self, kind: str, prefix: str, year: Optional[int] = None) -> str:
        """
        Allocate the next number for a document kind

        Args:
            kind: Document family, e.g. "loan" or "invoice"
            prefix: Lender-configured prefix, e.g. "LN"
            year: Calendar year embedded in the number (defaults to current UTC year)

        Returns:
            Formatted document number
        """
        if year is None:
            year = datetime.now(timezone.utc).year
        sequence = self.storage.next_sequence(f"{kind}:{prefix}:{year}")
        return format_document_number(prefix, year, sequence)
