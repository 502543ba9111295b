"""Chunked framing for payloads larger than a single BLE write.

A payload is sent as ``<TAG>_BEGIN <len>``, zero or more
``<TAG>_DATA <seq> <text>`` frames and a closing ``<TAG>_END``. The reader
firmware reassembles per tag; :class:`ChunkAssembler` implements the same
contract host-side.
"""

from __future__ import annotations

from enum import Enum

from pinmectl.core.errors import PinmeError

DEFAULT_CHUNK_SIZE = 16


class ChunkTag(str, Enum):
    NETWORK_CONFIG = "SUPA_CFG"
    AUTH_TOKEN = "JWT_SET"
    CERTIFICATE = "CA_SET"


class ChunkAssemblyError(PinmeError):
    """Raised when a frame sequence cannot be reassembled."""


def encode_chunk_commands(
    tag: ChunkTag | str,
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> list[str]:
    """Split ``text`` into framed commands for ``tag``.

    ``tag`` must not contain whitespace. Length and slicing are by character.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be a positive integer")
    name = tag.value if isinstance(tag, ChunkTag) else tag
    commands = [f"{name}_BEGIN {len(text)}"]
    for seq, start in enumerate(range(0, len(text), chunk_size)):
        commands.append(f"{name}_DATA {seq} {text[start:start + chunk_size]}")
    commands.append(f"{name}_END")
    return commands


class ChunkAssembler:
    """Receiver-side reassembly, one buffer per tag.

    ``BEGIN`` discards any incomplete buffer for the same tag. ``END``
    returns the payload and validates it against the declared length.
    """

    def __init__(self) -> None:
        self._buffers: dict[str, list[str]] = {}
        self._expected: dict[str, int] = {}

    def feed(self, command: str) -> tuple[str, str] | None:
        """Consume one frame; return ``(tag, payload)`` when a message completes."""
        head, _, rest = command.partition(" ")
        tag, sep, kind = head.rpartition("_")
        if not sep or not tag:
            raise ChunkAssemblyError(f"Not a chunk frame: {command!r}")

        if kind == "BEGIN":
            try:
                self._expected[tag] = int(rest)
            except ValueError as exc:
                raise ChunkAssemblyError(f"Invalid BEGIN length in {command!r}") from exc
            self._buffers[tag] = []
            return None

        if tag not in self._buffers:
            raise ChunkAssemblyError(f"{kind} for {tag} without BEGIN")

        if kind == "DATA":
            seq_text, _, part = rest.partition(" ")
            try:
                seq = int(seq_text)
            except ValueError as exc:
                raise ChunkAssemblyError(f"Invalid DATA sequence in {command!r}") from exc
            if seq != len(self._buffers[tag]):
                raise ChunkAssemblyError(
                    f"Out-of-order DATA for {tag}: got {seq}, expected {len(self._buffers[tag])}"
                )
            self._buffers[tag].append(part)
            return None

        if kind == "END":
            payload = "".join(self._buffers.pop(tag))
            expected = self._expected.pop(tag)
            if len(payload) != expected:
                raise ChunkAssemblyError(
                    f"{tag} length mismatch: declared {expected}, received {len(payload)}"
                )
            return tag, payload

        raise ChunkAssemblyError(f"Unknown frame kind {kind!r} in {command!r}")

    def pending(self) -> tuple[str, ...]:
        return tuple(sorted(self._buffers))
