from .cache import FamilyCache, FamilyCacheEntry, SpeciesFamilyInfo
from .resolver import FamilyMatchResolver, FamilyMatchResult, SummaryNotReady
from .tokens import family_cache_key, has_family_intersection, tokenize_family_label

__all__ = [
    "FamilyCache",
    "FamilyCacheEntry",
    "FamilyMatchResolver",
    "FamilyMatchResult",
    "SpeciesFamilyInfo",
    "SummaryNotReady",
    "family_cache_key",
    "has_family_intersection",
    "tokenize_family_label",
]
