from __future__ import annotations

import re
import unicodedata
from typing import Iterable, List, Optional, Sequence


_SEPARATOR_PATTERN = re.compile(r"\s*(?:,|/|;|\||&|\+)\s*|\s+(?:and|und)\s+", re.IGNORECASE)
_LEADING_CONJUNCTION = re.compile(r"^(?:and|und)\s+")


def normalize_token(value: Optional[str]) -> str:
    """Lower-case and strip combining diacritics (``Vögel`` -> ``vogel``)."""
    decomposed = unicodedata.normalize("NFD", str(value or "").strip().lower())
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def tokenize_family_label(value: Optional[str]) -> List[str]:
    normalized = normalize_token(value)
    if not normalized:
        return []
    tokens: List[str] = []
    for token in _SEPARATOR_PATTERN.split(normalized):
        token = _LEADING_CONJUNCTION.sub("", token.strip())
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def has_family_intersection(left: Sequence[str], right: Sequence[str]) -> bool:
    if not left or not right:
        return False
    right_set = set(right)
    return any(token in right_set for token in left)


def family_cache_key(tokens: Iterable[str]) -> str:
    return "|".join(sorted(set(tokens)))
