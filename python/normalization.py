"""
Shared text normalization for ingestion and matching

Both the ListIngestor and the ScreeningEngine canonicalize names and
addresses through this module so that stored watchlist entries and
screened customers are compared in exactly the same form.
"""

import re
import unicodedata
from typing import List, Optional

_PUNCTUATION = re.compile(r'[^\w\s]')
_WHITESPACE = re.compile(r'\s+')
_CONTROL_CHARS = re.compile(r'[\r\n\x00-\x1f\x7f-\x9f]')


def normalize_text(text: Optional[str]) -> str:
    """
    Normalize a name or address fragment into its matching-ready form.

    Removes accents, replaces punctuation with spaces, collapses whitespace
    and converts to uppercase.

    Args:
        text: The text to normalize (can be None)

    Returns:
        Normalized string, or empty string if text is None/empty
    """
    if not text:
        return ""

    # Compatibility decomposition also folds ligatures and full-width forms
    normalized = unicodedata.normalize('NFKD', str(text))
    normalized = ''.join(c for c in normalized if unicodedata.category(c) != 'Mn')
    normalized = _PUNCTUATION.sub(' ', normalized)
    normalized = normalized.replace('_', ' ')
    normalized = _WHITESPACE.sub(' ', normalized)
    return normalized.upper().strip()


def tokenize(normalized: str) -> List[str]:
    """Split an already normalized string into word tokens"""
    if not normalized:
        return []
    return normalized.split(' ')


def sanitize_for_logging(text: Optional[str]) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = _CONTROL_CHARS.sub(' ', str(text))
    sanitized = _WHITESPACE.sub(' ', sanitized).strip()
    return sanitized[:500] if len(sanitized) > 500 else sanitized
