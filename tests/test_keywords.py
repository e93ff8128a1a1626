"""Tests for keyword normalisation and warning classification."""

from __future__ import annotations

from inbox_sentinel.monitor.keywords import is_warning, normalize_keywords


class TestNormalizeKeywords:
    def test_trims_and_drops_blanks(self) -> None:
        assert normalize_keywords(["  Invoice ", "", "   ", "Urgent"]) == ["Invoice", "Urgent"]

    def test_collapses_case_insensitive_duplicates(self) -> None:
        """The first spelling wins."""
        assert normalize_keywords(["Invoice", "INVOICE", "invoice "]) == ["Invoice"]

    def test_none(self) -> None:
        assert normalize_keywords(None) == []


class TestIsWarning:
    def test_subject_match_ignores_case(self) -> None:
        assert is_warning("Your INVOICE #123", "Billing", ["Invoice"]) is True

    def test_sender_match(self) -> None:
        assert is_warning("Hello", "Security Team", ["security"]) is True

    def test_substring_match(self) -> None:
        assert is_warning("Invoices attached", "Alice", ["Invoice"]) is True

    def test_no_match(self) -> None:
        assert is_warning("Lunch?", "Bob", ["Invoice", "Urgent"]) is False

    def test_no_keywords(self) -> None:
        assert is_warning("Invoice", "Billing", []) is False
