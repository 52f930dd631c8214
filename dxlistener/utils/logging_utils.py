"""
Logging utilities for raw cluster traffic.

Cluster servers send bells, telnet negotiation bytes and the occasional
garbage. These helpers render lines and network errors so they can be logged
safely on a single line.
"""

import errno
import socket
from typing import Optional

DEFAULT_LINE_LIMIT = 160


def printable(line: Optional[str], limit: int = DEFAULT_LINE_LIMIT) -> str:
    """
    Render a raw line for logging.

    Control characters are escaped and long lines are truncated.

    Example:
        'DX de W1AW:\\x07 14025.0' -> 'DX de W1AW:\\\\x07 14025.0'

    Args:
        line: Raw line text
        limit: Maximum number of characters kept (default: 160)

    Returns:
        Escaped, possibly truncated text
    """
    if line is None:
        return "[none]"

    escaped = ''.join(
        ch if ch.isprintable() else ch.encode('unicode_escape').decode('ascii')
        for ch in line
    )

    if len(escaped) > limit:
        return f"{escaped[:limit]}... [{len(escaped) - limit} more]"
    return escaped


def describe_exception(exc: BaseException) -> str:
    """
    Describe a network exception in a few words.

    Args:
        exc: Exception object

    Returns:
        Short message such as "connection refused" or "ConnectionResetError: ..."
    """
    if isinstance(exc, socket.gaierror):
        return f"cannot resolve host ({exc.strerror or exc})"

    if isinstance(exc, TimeoutError):
        return "timed out"

    if isinstance(exc, OSError) and exc.errno is not None:
        name = errno.errorcode.get(exc.errno)
        reason = exc.strerror or str(exc)
        if name:
            return f"{reason.lower()} ({name})"
        return reason

    message = str(exc)
    if message:
        return f"{type(exc).__name__}: {message}"
    return type(exc).__name__
