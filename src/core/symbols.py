from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol


class SymbolIdentity(Protocol):
    """What the engine needs to know about securities; fungibility is never inferred."""

    def exists(self, symbol_id: str) -> bool: ...

    def equivalents(self, symbol_id: str) -> frozenset[str]: ...


@dataclass
class SymbolRegistry:
    """
    In-memory identity oracle.

    Symbols may belong to one substitute group; symbols sharing a group are
    substantially identical for wash-sale purposes. `allow_unknown` accepts any
    symbol (useful for imports where the security master is not loaded).
    """

    allow_unknown: bool = False
    _symbols: set[str] = field(default_factory=set)
    _group_of: dict[str, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(self, symbol_id: str, *, substitute_group: Optional[str] = None) -> None:
        s = (symbol_id or "").strip()
        if not s:
            raise ValueError("symbol_id is blank")
        with self._lock:
            self._symbols.add(s)
            if substitute_group:
                self._group_of[s] = substitute_group

    def add_many(self, symbol_ids: Iterable[str]) -> None:
        for s in symbol_ids:
            self.add(s)

    def add_group(self, group: str, symbol_ids: Iterable[str]) -> None:
        for s in symbol_ids:
            self.add(s, substitute_group=group)

    def exists(self, symbol_id: str) -> bool:
        if self.allow_unknown:
            return bool((symbol_id or "").strip())
        with self._lock:
            return symbol_id in self._symbols

    def equivalents(self, symbol_id: str) -> frozenset[str]:
        with self._lock:
            group = self._group_of.get(symbol_id)
            if group is None:
                return frozenset({symbol_id})
            return frozenset({s for s, g in self._group_of.items() if g == group} | {symbol_id})


def substantially_identical(identity: SymbolIdentity, *, symbol_a: str, symbol_b: str) -> tuple[bool, str]:
    if symbol_a == symbol_b:
        return True, "same_symbol"
    if not identity.exists(symbol_a) or not identity.exists(symbol_b):
        return False, "unknown_security"
    if symbol_b in identity.equivalents(symbol_a):
        return True, "same_substitute_group"
    return False, "no_match"
