from typing import FrozenSet, Iterable, Optional


# Recomputed by the transformer or owned by the routing layer; never copied.
MANDATORY_EXCLUSIONS = frozenset({
    "content-length",
    "content-type",
    "host",
    "transfer-encoding",
})

# Used when no IgnoredRequestHeaders are configured.
DEFAULT_HOP_BY_HOP = (
    "connection",
    "keep-alive",
    "proxy-connection",
    "proxy-authorization",
    "te",
    "expect",
    "trailer",
    "upgrade",
)


class HeaderFilter:
    """Stop-list of request header names, matched case-insensitively."""

    def __init__(self, extra: Optional[Iterable[str]] = None):
        names = set(MANDATORY_EXCLUSIONS)
        for name in extra or ():
            if name and name.strip():
                names.add(name.strip().lower())
        self._names: FrozenSet[str] = frozenset(names)

    @property
    def names(self) -> FrozenSet[str]:
        return self._names

    def should_forward(self, header_name: str) -> bool:
        return header_name.strip().lower() not in self._names

    def __contains__(self, header_name: str) -> bool:
        return not self.should_forward(header_name)

    def __repr__(self):
        return f"HeaderFilter({sorted(self._names)!r})"
