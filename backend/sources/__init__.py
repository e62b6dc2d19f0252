from sources.base import MatchSource
from sources.faceit import FaceitMatchSource, normalize_match

__all__ = [
    "MatchSource",
    "FaceitMatchSource",
    "normalize_match",
]
