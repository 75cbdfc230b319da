"""SSH transport for tmuxlink.

This package contains:
- connection: one multiplexed (ControlMaster) link to a remote host
- connection_pool: per-host link reuse with liveness caching
"""

__all__ = ["connection", "connection_pool"]
