"""Keyword list normalisation and warning classification."""

from __future__ import annotations

from collections.abc import Iterable


def normalize_keywords(keywords: Iterable[str] | None) -> list[str]:
    """Trim, drop blanks and collapse case-insensitive duplicates, keeping order."""
    result: list[str] = []
    seen: set[str] = set()
    for keyword in keywords or ():
        if not isinstance(keyword, str):
            continue
        trimmed = keyword.strip()
        folded = trimmed.casefold()
        if not trimmed or folded in seen:
            continue
        seen.add(folded)
        result.append(trimmed)
    return result


def is_warning(subject: str, sender: str, keywords: Iterable[str]) -> bool:
    """True if any keyword occurs in the subject or sender, ignoring case."""
    haystacks = (subject.casefold(), sender.casefold())
    return any(keyword.casefold() in text for keyword in keywords for text in haystacks)
