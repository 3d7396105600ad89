"""Process memory probe used as the stack's memory-pressure signal."""
from __future__ import annotations

import psutil

# Resident size at which the stack starts evicting flows after each delivery.
# 13 MiB fits a tunnel extension's memory limit but sits below the RSS of a bare
# CPython interpreter, so standalone deployments should set memory_ceiling.
MEMORY_CEILING = 13 * 1024 * 1024

_process = None


def memory_footprint() -> int:
    """Return the resident set size of the current process in bytes."""
    global _process
    if _process is None:
        _process = psutil.Process()
    return _process.memory_info().rss
