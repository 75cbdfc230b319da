"""Viewport differ for fallback polling.

Fallback mode captures the visible screen periodically and re-emits only the
lines that changed, addressed with absolute cursor positioning. This is the
degraded path: a polled source cannot keep up with fast output, so large
changes fall back to a full repaint instead of a patch.

Public API (the "studs"):
    ViewportDiffer: Stateful line differ producing renderer bytes
    normalize_crlf: Convert bare LF line endings to CRLF
"""

import re

CLEAR_TO_EOL = "\x1b[K"
CLEAR_TO_EOS = "\x1b[J"
CURSOR_HOME = "\x1b[H"
HIDE_CURSOR = "\x1b[?25l"

_BARE_LF = re.compile(r"(?<!\r)\n")


def normalize_crlf(content: str) -> str:
    """Convert bare ``\\n`` to ``\\r\\n`` so captured text renders line by line.

    Example:
        >>> normalize_crlf("a\\nb\\r\\nc")
        'a\\r\\nb\\r\\nc'
    """
    return _BARE_LF.sub("\r\n", content)


class ViewportDiffer:
    """Diffs successive screen captures.

    The first capture, a change above ``full_redraw_ratio`` of the lines, or a
    line count change of more than half the previous height produces a full
    repaint. Otherwise only changed lines are rewritten in place.

    Example:
        >>> differ = ViewportDiffer()
        >>> differ.diff("a\\nb\\n").startswith("\\x1b[H")
        True
        >>> differ.diff("a\\nB\\n")
        '\\x1b[2;1HB\\x1b[K\\x1b[?25l'
    """

    def __init__(self, full_redraw_ratio: float = 0.8):
        if not 0 < full_redraw_ratio <= 1:
            raise ValueError("full_redraw_ratio must be in (0, 1]")
        self.full_redraw_ratio = full_redraw_ratio
        self._lines: list[str] = []

    def reset(self) -> None:
        """Forget the previous capture (next diff is a full repaint)."""
        self._lines = []

    def diff(self, capture: str) -> str:
        """Return the bytes (as text) that bring the renderer to ``capture``.

        Returns "" when nothing changed.
        """
        new_lines = capture.rstrip("\n").split("\n")
        old_lines = self._lines
        self._lines = new_lines

        if not old_lines:
            return self._full(new_lines)

        height = max(len(new_lines), len(old_lines))
        changed = sum(
            1
            for i in range(height)
            if (new_lines[i] if i < len(new_lines) else "")
            != (old_lines[i] if i < len(old_lines) else "")
        )
        if changed == 0:
            return ""

        mismatch = abs(len(new_lines) - len(old_lines)) > len(old_lines) // 2
        if changed / height > self.full_redraw_ratio or mismatch:
            return self._full(new_lines)

        parts = []
        for row, line in enumerate(new_lines):
            if row < len(old_lines) and line == old_lines[row]:
                continue
            parts.append(f"\x1b[{row + 1};1H{line}{CLEAR_TO_EOL}")

        if len(new_lines) < len(old_lines):
            parts.append(f"\x1b[{len(new_lines) + 1};1H{CLEAR_TO_EOS}")

        # Full-screen programs draw their own cursor
        parts.append(HIDE_CURSOR)
        return "".join(parts)

    @staticmethod
    def _full(lines: list[str]) -> str:
        body = "\r\n".join(f"{line}{CLEAR_TO_EOL}" for line in lines)
        # No trailing CRLF: a full-height capture must not scroll the screen
        return f"{CURSOR_HOME}{body}{CLEAR_TO_EOS}{HIDE_CURSOR}"


__all__ = ["ViewportDiffer", "normalize_crlf"]
