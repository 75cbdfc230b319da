"""tmuxlink - persistent tmux session transport

Philosophy:
- tmux sessions outlive every client; the transport only attaches and detaches
- One executor interface for local and remote sessions
- Stream raw bytes, leave escape sequences to the renderer
- Fail with typed errors, never hang on an unreachable host

tmuxlink pools SSH links per host, runs tmux operations locally or remotely,
and streams a session's screen and scrollback to a terminal renderer.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
