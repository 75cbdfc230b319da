"""UTF-8 boundary repair for chunked terminal output.

Reads from a pty split the byte stream at arbitrary points, so a multi-byte
character can straddle two reads. The assembler withholds an incomplete
trailing character and prepends it to the next chunk. Nothing else about the
stream is inspected or changed: invalid bytes pass through untouched.

Public API (the "studs"):
    find_last_valid_utf8_boundary: Index up to which a chunk can be emitted
    Utf8ChunkAssembler: Stateful feed/flush/discard wrapper
"""

import logging

logger = logging.getLogger(__name__)

MAX_CHAR_WIDTH = 4


def _sequence_length(lead: int) -> int:
    """Length of the sequence started by ``lead``; 0 if it cannot start one."""
    if 0xC2 <= lead <= 0xDF:
        return 2
    if 0xE0 <= lead <= 0xEF:
        return 3
    if 0xF0 <= lead <= 0xF4:
        return 4
    return 0


def _second_byte_ok(lead: int, second: int) -> bool:
    # Excludes overlongs, surrogates and code points above U+10FFFF
    if lead == 0xE0:
        return 0xA0 <= second <= 0xBF
    if lead == 0xED:
        return 0x80 <= second <= 0x9F
    if lead == 0xF0:
        return 0x90 <= second <= 0xBF
    if lead == 0xF4:
        return 0x80 <= second <= 0x8F
    return 0x80 <= second <= 0xBF


def find_last_valid_utf8_boundary(data: bytes) -> int:
    """Return the length of the prefix of ``data`` that is safe to emit.

    Only a trailing *incomplete but so-far valid* multi-byte sequence is held
    back. Scanning stops after MAX_CHAR_WIDTH bytes.

    Example:
        >>> find_last_valid_utf8_boundary("héllo".encode())
        6
        >>> find_last_valid_utf8_boundary(b"ab\\xe2\\x82")  # first 2 bytes of U+20AC
        2
        >>> find_last_valid_utf8_boundary(b"ab\\xff")  # invalid byte passes through
        3
    """
    size = len(data)
    stop = max(0, size - MAX_CHAR_WIDTH)

    for i in range(size - 1, stop - 1, -1):
        byte = data[i]
        if 0x80 <= byte <= 0xBF:
            continue
        if byte < 0x80:
            return size

        expected = _sequence_length(byte)
        available = size - i
        if expected == 0 or available >= expected:
            return size
        if available >= 2 and not _second_byte_ok(byte, data[i + 1]):
            return size
        return i

    return size


class Utf8ChunkAssembler:
    """Repairs UTF-8 character boundaries across successive chunks.

    Example:
        >>> assembler = Utf8ChunkAssembler()
        >>> euro = "€".encode()
        >>> assembler.feed(b"price " + euro[:1])
        b'price '
        >>> assembler.feed(euro[1:] + b"!")
        b'\\xe2\\x82\\xac!'
    """

    def __init__(self):
        self._pending = b""
        self._orphans = 0

    @property
    def pending(self) -> bytes:
        return self._pending

    def feed(self, chunk: bytes) -> bytes:
        """Return the emit-safe part of pending + chunk, keeping the rest."""
        if self._orphans and chunk:
            chunk = self._drop_orphans(chunk)

        data = self._pending + chunk
        cut = find_last_valid_utf8_boundary(data)
        self._pending = data[cut:]
        return data[:cut]

    def flush(self) -> bytes:
        """Return whatever is withheld (used at end of stream)."""
        pending, self._pending = self._pending, b""
        self._orphans = 0
        return pending

    def discard(self) -> bytes:
        """Drop the withheld bytes at an epoch boundary.

        The continuation bytes that would have completed the dropped
        character are skipped when they arrive.
        """
        pending, self._pending = self._pending, b""
        if pending:
            self._orphans = _sequence_length(pending[0]) - len(pending)
            logger.debug(f"Discarded {len(pending)} withheld byte(s) at boundary")
        return pending

    def _drop_orphans(self, chunk: bytes) -> bytes:
        index = 0
        while self._orphans and index < len(chunk) and 0x80 <= chunk[index] <= 0xBF:
            index += 1
            self._orphans -= 1
        if index < len(chunk):
            # A non-continuation byte ends the dropped character early
            self._orphans = 0
        return chunk[index:]


__all__ = ["MAX_CHAR_WIDTH", "Utf8ChunkAssembler", "find_last_valid_utf8_boundary"]
