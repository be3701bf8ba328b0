"""URL match predicate shared by both interception hooks.

A URL matches when:

1. it contains the configured pattern (case-insensitive), or
2. it contains any alternate pattern, or
3. no pattern is configured and it contains one of the common API-path
   substrings in ``HEURISTIC_PATTERNS`` (case-insensitive).

Alternates only apply alongside a configured pattern. The page hook runs
the same predicate from ``to_dict()`` so both layers agree on what counts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

HEURISTIC_PATTERNS: tuple[str, ...] = ("api/", "/api", "ajax", ".php", "json", "rest/", "/rest")


@dataclass(frozen=True)
class UrlMatcher:
    """Predicate deciding which exchanges get captured.

    Example:
        >>> m = UrlMatcher("https://x/api/v4/pdp/get_pc")
        >>> m.matches("https://x/api/v4/pdp/get_pc?id=1")
        True
        >>> m.matches("https://x/other")
        False
    """

    pattern: str = ""
    alternates: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "pattern", (self.pattern or "").strip())
        object.__setattr__(self, "alternates", tuple(a for a in self.alternates if a))

    @property
    def uses_heuristic(self) -> bool:
        return not self.pattern

    def matches(self, url: str | None) -> bool:
        if not url:
            return False

        if self.uses_heuristic:
            lowered = url.lower()
            return any(p in lowered for p in HEURISTIC_PATTERNS)

        if self.pattern.lower() in url.lower():
            return True
        return any(alt in url for alt in self.alternates)

    __call__ = matches

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "alternates": list(self.alternates),
            "heuristics": list(HEURISTIC_PATTERNS),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UrlMatcher:
        return cls(
            pattern=data.get("pattern") or "",
            alternates=tuple(data.get("alternates") or ()),
        )
