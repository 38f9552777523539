"""Keyword-based categorizer.

Assigns categories from user-defined keyword rules, first match wins.
Matching is a case- and accent-insensitive substring test over the
normalized description and merchant. Excluded keywords act as a denylist:
a transaction whose text contains one is left uncategorized.
"""
import re
import unicodedata
from typing import Dict, Any, Iterable, List, Optional, Sequence


# Artifacts PDF extraction leaves in front of descriptions
PREFIX_PATTERNS = [
    re.compile(r"^\d{2}/\d{2}\s+"),           # "01/15 "
    re.compile(r"^\d{4}-\d{2}-\d{2}\s+"),     # "2025-01-15 "
    re.compile(r"^\[trx\]\s*"),
    re.compile(r"^\*debit\*\s*"),
    re.compile(r"^\*credit\*\s*"),
    re.compile(r"^purchase\s+"),
    re.compile(r"^compra\s+"),
]

WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip accents and PDF prefixes, collapse whitespace."""
    if not text:
        return ""

    normalized = text.lower()
    normalized = unicodedata.normalize("NFD", normalized)
    normalized = "".join(c for c in normalized if not unicodedata.combining(c))

    for pattern in PREFIX_PATTERNS:
        normalized = pattern.sub("", normalized)

    return WHITESPACE_RE.sub(" ", normalized).strip()


def build_search_text(description: Optional[str], merchant: Optional[str]) -> str:
    """Normalized description and merchant joined by a space."""
    return f"{normalize_text(description)} {normalize_text(merchant)}".strip()


def contains_keyword(search_text: str, keyword: str) -> bool:
    normalized_keyword = normalize_text(keyword)
    if not normalized_keyword:
        return False
    return normalized_keyword in normalize_text(search_text)


def is_excluded(search_text: str, excluded: Iterable[str]) -> bool:
    return any(contains_keyword(search_text, word) for word in excluded)


def categorize_transaction(
    transaction: Dict[str, Any],
    keywords: Sequence[Dict[str, Any]],
    excluded: Iterable[str] = ()
) -> Optional[Any]:
    """Categorize one transaction.

    Args:
        transaction: Dict with description and merchant
        keywords: Dicts with category_id and keyword, in priority order
        excluded: Excluded keyword strings

    Returns:
        category_id of the first matching keyword, or None
    """
    if not keywords:
        return None

    search_text = build_search_text(transaction.get("description"), transaction.get("merchant"))
    if is_excluded(search_text, excluded):
        return None

    for rule in keywords:
        if contains_keyword(search_text, rule["keyword"]):
            return rule["category_id"]
    return None


def categorize_transactions(
    transactions: Sequence[Dict[str, Any]],
    keywords: Sequence[Dict[str, Any]],
    excluded: Iterable[str] = ()
) -> List[Dict[str, Any]]:
    """Categorize many transactions, returns [{id, category_id}]."""
    excluded = list(excluded)
    return [
        {"id": txn["id"], "category_id": categorize_transaction(txn, keywords, excluded)}
        for txn in transactions
    ]


def find_matching_transactions_for_keyword(
    transactions: Sequence[Dict[str, Any]],
    keyword: str,
    category_id: Any,
    excluded: Iterable[str] = ()
) -> List[Dict[str, Any]]:
    """Transactions matching a single keyword, mapped to `category_id`.

    Used when a keyword is created, retried or reassigned.
    """
    normalized_keyword = normalize_text(keyword)
    if not normalized_keyword:
        return []
    excluded = list(excluded)

    matches = []
    for txn in transactions:
        search_text = build_search_text(txn.get("description"), txn.get("merchant"))
        if normalized_keyword in search_text and not is_excluded(search_text, excluded):
            matches.append({"id": txn["id"], "category_id": category_id})
    return matches
