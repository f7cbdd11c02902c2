"""
Tokenizer - Split entry names and queries into search tokens.

Names are lowercased and split on anything that is not an ASCII letter,
a digit or a CJK unified ideograph. Indexing and querying must use the
same function so query tokens line up with entry tokens.
"""

import re
from typing import Tuple


_SEPARATORS = re.compile(r"[^a-z0-9\u4e00-\u9fa5]+")


def tokenize(name: str) -> Tuple[str, ...]:
    """
    Return the ordered, de-duplicated tokens of a name.

    Usage:
        tokenize("Annual_Report 2024.PDF")  # ("annual", "report", "2024", "pdf")
    """
    seen = {}
    for token in _SEPARATORS.split(name.lower()):
        if token:
            seen.setdefault(token, None)
    return tuple(seen)
