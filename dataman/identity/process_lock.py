"""
Single-host liveness probe for the registry exclusivity lock.

The lock itself is a pid marker stored in the registry metadata table; this
module only answers whether the recorded process still exists. There is a
window between the probe and the marker rewrite; two processes starting at the
same instant may both pass. That is accepted for an advisory lock.
"""

from __future__ import annotations

import os


def current_pid() -> int:
    """Pid recorded as the lock owner for this process."""
    return os.getpid()


def process_is_alive(pid: int) -> bool:
    """Check whether a process with this pid exists on this host.

    Uses signal 0, which performs the permission and existence checks
    without delivering anything.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by another user.
        return True
    return True
