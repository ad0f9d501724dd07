"""Utility functions for Flowstate."""
from typing import List


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for use with ESCAPE '\\'

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\_name'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def split_query_tokens(query: str) -> List[str]:
    """Split a search query on whitespace, dropping empty tokens."""
    return [token for token in query.split() if token]


def build_prefix_match_query(query: str) -> str:
    """Build an FTS5 MATCH expression where every token is a prefix term.

    Each token is quoted (embedded quotes doubled) so FTS5 operators and
    punctuation in user text are taken literally, then suffixed with ``*``.
    Space-separated terms are ANDed by FTS5.

    Example:
        >>> build_prefix_match_query('hel wor')
        '"hel"* "wor"*'
    """
    terms = []
    for token in split_query_tokens(query):
        escaped = token.replace('"', '""')
        terms.append(f'"{escaped}"*')
    return " ".join(terms)
