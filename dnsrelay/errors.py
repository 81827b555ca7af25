"""Error classification helpers."""

from __future__ import annotations

import errno
import sys
from typing import Optional

_PLAN9_EPIPE_TEXT = "write on closed pipe"


def is_epipe(err: Optional[BaseException]) -> bool:
    """Tell whether ``err`` or any error it was raised from is EPIPE."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        if isinstance(err, BrokenPipeError):
            return True
        if isinstance(err, OSError) and err.errno == errno.EPIPE:
            return True
        if sys.platform.startswith("plan9") and _PLAN9_EPIPE_TEXT in str(err):
            return True
        err = err.__cause__
    return False