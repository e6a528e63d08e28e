import logging
from typing import Dict, List, NamedTuple, Optional, Sequence

logger = logging.getLogger(__name__)


class OptimizationResult(NamedTuple):
    original_names: List[str]
    optimized_names: List[str]
    removed_suffix: Optional[str]
    applied_count: int
    total_count: int


class NameOptimizer:
    """Strips a dotted suffix shared by most server names, such as .example.com"""

    MIN_NAMES = 3
    MIN_REMAINING = 3

    def __init__(self, threshold: float = 0.7):
        self.threshold = threshold

    @staticmethod
    def candidate_suffixes(name: str) -> List[str]:
        """Trailing 2 and 3 dot-separated components, with the leading dot"""
        parts = name.strip().split('.')
        candidates = []
        for size in (2, 3):
            if len(parts) > size and all(parts[-size:]):
                candidates.append('.' + '.'.join(parts[-size:]))
        return candidates

    @classmethod
    def strip_suffix(cls, name: str, suffix: str) -> Optional[str]:
        """The shortened name, or None when name does not qualify"""
        stripped = name.strip()
        if not stripped.endswith(suffix):
            return None
        remainder = stripped[:-len(suffix)].strip()
        if len(remainder) < cls.MIN_REMAINING:
            return None
        return remainder

    def optimize(self, names: Sequence[str]) -> OptimizationResult:
        names = list(names)
        unchanged = OptimizationResult(names, list(names), None, 0, len(names))
        if len(names) < self.MIN_NAMES:
            return unchanged

        counts: Dict[str, int] = {}
        for name in names:
            for suffix in self.candidate_suffixes(name):
                counts.setdefault(suffix, 0)
        for suffix in counts:
            counts[suffix] = sum(1 for name in names if self.strip_suffix(name, suffix) is not None)

        if not counts:
            return unchanged
        best = max(counts, key=lambda s: (counts[s], len(s)))
        count = counts[best]
        if count < self.MIN_NAMES or count / len(names) < self.threshold:
            logger.debug("Name optimisation skipped: best suffix %r covers %d/%d names", best, count, len(names))
            return unchanged

        optimized = []
        for name in names:
            stripped = self.strip_suffix(name, best)
            optimized.append(stripped if stripped is not None else name)
        logger.debug("Name optimisation removed %r from %d/%d names", best, count, len(names))
        return OptimizationResult(names, optimized, best, count, len(names))
