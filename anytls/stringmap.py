"""Line-oriented ``key=value`` maps used in settings frames and padding schemes."""

from __future__ import annotations

from collections.abc import Mapping


def string_map_to_bytes(mapping: Mapping[str, str]) -> bytes:
    """Serialise a mapping as ``key=value`` lines joined by newlines."""
    return "\n".join(f"{key}={value}" for key, value in mapping.items()).encode()


def string_map_from_bytes(data: bytes) -> dict[str, str]:
    """Parse ``key=value`` lines; lines without ``=`` are ignored."""
    result: dict[str, str] = {}
    for line in data.decode(errors="replace").split("\n"):
        key, sep, value = line.partition("=")
        if sep:
            result[key] = value
    return result