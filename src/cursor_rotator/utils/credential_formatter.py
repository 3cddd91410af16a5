"""
Helpers for raw credential strings.

A raw credential string is a comma separated list of entries. Each entry is
either a bare session token or a composite ``<label>::<token>`` value, where
the separator may also appear percent-encoded as ``%3A%3A`` (the form the
browser cookie jar stores it in).
"""

from typing import List, Optional

ENCODED_SEPARATOR = "%3A%3A"
SEPARATOR = "::"


def split_credentials(raw: Optional[str]) -> List[str]:
    """
    Split a raw credential string into trimmed, non-empty entries.

    Examples:
        >>> split_credentials(" a, b ,, c")
        ['a', 'b', 'c']
    """
    if not raw:
        return []
    return [entry.strip() for entry in raw.split(",") if entry.strip()]


def extract_token(entry: Optional[str]) -> Optional[str]:
    """
    Extract the usable session token from a credential entry.

    Examples:
        >>> extract_token("user_01%3A%3Aeyabc")
        'eyabc'
        >>> extract_token("user_01::eyabc")
        'eyabc'
        >>> extract_token("eyabc")
        'eyabc'
    """
    if not entry:
        return None
    if ENCODED_SEPARATOR in entry:
        entry = entry.split(ENCODED_SEPARATOR)[1]
    elif SEPARATOR in entry:
        entry = entry.split(SEPARATOR)[1]
    return entry.strip()
