"""Error taxonomy for the session transport layer.

Philosophy:
- Callers must be able to tell "the session is gone" from "the host is gone"
- Every error carries the context needed to decide the next step
- tmux stderr is classified in one place, never by string matching in callers

Public API (the "studs"):
    TransportError: Base class for every error raised by tmuxlink
    LinkUnavailable: Host unreachable / auth failure (retry on next pool get)
    ConnectionUnavailable: Raised by the pool when a link cannot be established
    TargetNotFound: tmux session vanished (recreate, do not retry)
    AlreadyExists: Session creation collided with an existing session
    AttachFailed: PTY or interactive attach setup failed (may trigger fallback)
    StreamInterrupted: Mid-stream I/O error (teardown + reset)
    PartialWriteFailed: Resize/option/write round-trip failed (non-fatal)
    CommandFailed: Any other non-zero tmux exit
    classify_tmux_error: Map tmux stderr to the right error type
"""

# Fragments tmux prints when the target session (or its server) is gone.
_TARGET_GONE_PHRASES = (
    "can't find session",
    "session not found",
    "no server running",
    "can't find pane",
    "can't find window",
    "no current session",
    "no sessions",
    "error connecting to",
)

_DUPLICATE_PHRASES = ("duplicate session",)


class TransportError(Exception):
    """Base class for session transport errors."""

    def __init__(
        self,
        message: str,
        *,
        host_id: str | None = None,
        session_name: str | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.host_id = host_id
        self.session_name = session_name
        self.cause = cause


class LinkUnavailable(TransportError):
    """Raised when the link to a host is unreachable or authentication fails."""

    pass


class ConnectionUnavailable(LinkUnavailable):
    """Raised by the connection pool when a usable connection cannot be obtained."""

    pass


class TargetNotFound(TransportError):
    """Raised when the target tmux session does not exist (anymore)."""

    pass


class AlreadyExists(TransportError):
    """Raised when creating a session whose name is already taken."""

    pass


class AttachFailed(TransportError):
    """Raised when the pseudo-terminal or interactive attach cannot be set up."""

    pass


class StreamInterrupted(TransportError):
    """Raised (or reported via an exit event) when a live stream breaks mid-read."""

    pass


class PartialWriteFailed(TransportError):
    """Raised when a resize, option or input round-trip fails without killing the stream."""

    pass


class CommandFailed(TransportError):
    """Raised when a tmux command fails for any other reason."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.stderr = stderr


def classify_tmux_error(
    stderr: str,
    returncode: int | None,
    *,
    command: str,
    host_id: str | None = None,
    session_name: str | None = None,
) -> TransportError:
    """Map a failed tmux invocation to the matching error type.

    Args:
        stderr: Captured stderr of the failed command
        returncode: Process exit code
        command: tmux sub-command that failed (for the message)
        host_id: Host identifier (None for local)
        session_name: Target session, if any

    Returns:
        TargetNotFound, AlreadyExists or CommandFailed

    Example:
        >>> err = classify_tmux_error("can't find session: dev", 1, command="kill-session")
        >>> isinstance(err, TargetNotFound)
        True
    """
    text = (stderr or "").strip()
    lowered = text.lower()
    where = f" on {host_id}" if host_id else ""

    if any(phrase in lowered for phrase in _DUPLICATE_PHRASES):
        return AlreadyExists(
            f"tmux session '{session_name}' already exists{where}",
            host_id=host_id,
            session_name=session_name,
        )

    if any(phrase in lowered for phrase in _TARGET_GONE_PHRASES):
        return TargetNotFound(
            f"tmux session '{session_name}' not found{where}: {text}",
            host_id=host_id,
            session_name=session_name,
        )

    return CommandFailed(
        f"tmux {command} failed{where} (exit {returncode}): {text}",
        returncode=returncode,
        stderr=text,
        host_id=host_id,
        session_name=session_name,
    )


__all__ = [
    "AlreadyExists",
    "AttachFailed",
    "CommandFailed",
    "ConnectionUnavailable",
    "LinkUnavailable",
    "PartialWriteFailed",
    "StreamInterrupted",
    "TargetNotFound",
    "TransportError",
    "classify_tmux_error",
]
