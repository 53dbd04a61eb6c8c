"""Padding schemes that shape the sizes of the first records of a session."""

from __future__ import annotations

import hashlib
import re
import secrets
import threading

from anytls.stringmap import string_map_from_bytes

CHECK_MARK = -1

DEFAULT_PADDING_SCHEME = b"""stop=8
0=30-30
1=100-400
2=400-500,c,500-1000,c,500-1000,c,500-1000,c,500-1000
3=9-9,500-1000
4=500-1000
5=500-1000
6=500-1000
7=500-1000"""

_INT = re.compile(r"[+-]?[0-9]+")


def _parse_int(text: str) -> int | None:
    return int(text) if _INT.fullmatch(text) else None


class PaddingFactory:
    """A parsed padding scheme; raises ValueError for a malformed one."""

    def __init__(self, raw_scheme: bytes) -> None:
        self.raw_scheme = bytes(raw_scheme)
        self.md5 = hashlib.md5(self.raw_scheme).hexdigest()
        scheme = string_map_from_bytes(self.raw_scheme)
        if not scheme:
            raise ValueError("empty padding scheme")
        stop = _parse_int(scheme.get("stop", ""))
        if stop is None:
            raise ValueError("padding scheme has no valid stop value")
        self.stop = stop & 0xFFFFFFFF
        self._scheme = scheme

    def generate_record_payload_sizes(self, pkt: int) -> list[int]:
        """Record sizes for packet number ``pkt``; CHECK_MARK marks a check point."""
        spec = self._scheme.get(str(pkt))
        if spec is None:
            return []
        sizes: list[int] = []
        for part in spec.split(","):
            bounds = part.split("-")
            if len(bounds) == 2:
                low, high = _parse_int(bounds[0]), _parse_int(bounds[1])
                if low is None or high is None:
                    continue
                low, high = min(low, high), max(low, high)
                if low <= 0 or high <= 0:
                    continue
                if low == high:
                    sizes.append(low)
                else:
                    sizes.append(low + secrets.randbelow(high - low))
            elif part == "c":
                sizes.append(CHECK_MARK)
        return sizes


class PaddingHolder:
    """A thread-safe slot holding the active padding factory."""

    def __init__(self, factory: PaddingFactory) -> None:
        self._lock = threading.Lock()
        self._factory = factory

    def load(self) -> PaddingFactory:
        with self._lock:
            return self._factory

    def store(self, factory: PaddingFactory) -> None:
        with self._lock:
            self._factory = factory


DEFAULT_PADDING = PaddingHolder(PaddingFactory(DEFAULT_PADDING_SCHEME))


def update_padding_scheme(raw_scheme: bytes, holder: PaddingHolder | None = None) -> bool:
    """Install a new scheme into ``holder`` (the default one if omitted)."""
    try:
        factory = PaddingFactory(raw_scheme)
    except ValueError:
        return False
    (holder or DEFAULT_PADDING).store(factory)
    return True