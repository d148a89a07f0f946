"""
Tests for document numbering
"""

import pytest
from datetime import datetime, timezone

from lendbook.storage import InMemoryStorage
from lendbook.numbering import DocumentNumberer, format_document_number, parse_document_number


class TestDocumentNumbers:
    """Test number formatting and parsing"""

    def test_format(self):
        assert format_document_number("LN", 2025, 1) == "LN-2025-0001"
        assert format_document_number("INV", 2025, 12345) == "INV-2025-12345"

    def test_parse(self):
        assert parse_document_number("RCPT-2024-0042") == ("RCPT", 2024, 42)

    @pytest.mark.parametrize("number", ["", "LN2025-0001", "LN-25-0001", "LN-2025-01"])
    def test_parse_rejects_malformed(self, number):
        with pytest.raises(ValueError):
            parse_document_number(number)


class TestDocumentNumberer:
    """Test sequential allocation"""

    def setup_method(self):
        self.numberer = DocumentNumberer(InMemoryStorage())

    def test_sequential_numbers(self):
        assert self.numberer.next_number("loan", "LN", 2025) == "LN-2025-0001"
        assert self.numberer.next_number("loan", "LN", 2025) == "LN-2025-0002"

    def test_counter_per_year(self):
        self.numberer.next_number("invoice", "INV", 2025)
        assert self.numberer.next_number("invoice", "INV", 2026) == "INV-2026-0001"

    def test_counter_per_kind_and_prefix(self):
        self.numberer.next_number("loan", "LN", 2025)
        assert self.numberer.next_number("invoice", "INV", 2025) == "INV-2025-0001"
        assert self.numberer.next_number("loan", "LOAN", 2025) == "LOAN-2025-0001"

    def test_default_year_is_current(self):
        year = datetime.now(timezone.utc).year
        assert self.numberer.next_number("contract", "CONT") == f"CONT-{year}-0001"
