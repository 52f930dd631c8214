"""
DX Cluster exceptions

The base class for transport problems is ClusterError.

ConnectError:
    raised when a session cannot be established (DNS, refused, timeout,
    or the server hung up before login completed)
ClusterIOError:
    raised when an established session fails; ConnectionClosed and
    SessionStalled narrow it down
ChannelClosed:
    raised by the dispatcher once the consumer dropped its end
ParseError:
    raised by the parser for a spot candidate that does not fit its grammar
"""

__all__ = [
    'ClusterError',
    'ConnectError',
    'ClusterIOError',
    'ConnectionClosed',
    'SessionStalled',
    'ChannelClosed',
    'ParseError',
    'BadFrequency',
    'MissingTimestamp',
    'BadCallsign',
    'ConfigError',
]


class ClusterError(Exception):
    """Base class for all cluster transport errors."""

    def __init__(self, host, port, message=None):
        self.host = host
        self.port = port
        self.message = message or f"DX Cluster error on {host}:{port}"
        super().__init__(self.message)

    def __str__(self):
        return self.message


class ConnectError(ClusterError):
    """Raised when connecting or logging in to a cluster server fails."""
    def __init__(self, host, port, message=None):
        msg = message or f"Failed to connect to {host}:{port}"
        super().__init__(host, port, msg)


class ClusterIOError(ClusterError):
    """Raised when an established session fails while reading."""
    def __init__(self, host, port, message=None):
        msg = message or f"I/O error on session {host}:{port}"
        super().__init__(host, port, msg)


class ConnectionClosed(ClusterIOError):
    """Raised when the server closed the connection."""
    def __init__(self, host, port, message=None):
        msg = message or f"Connection to {host}:{port} closed by server"
        super().__init__(host, port, msg)


class SessionStalled(ClusterIOError):
    """Raised when no line arrived within the stall timeout."""
    def __init__(self, host, port, timeout, message=None):
        self.timeout = timeout
        msg = message or f"No data from {host}:{port} for {timeout:g} seconds"
        super().__init__(host, port, msg)


class ChannelClosed(Exception):
    """Raised when publishing into a channel whose consumer has gone away."""

    def __init__(self, message=None):
        self.message = message or "Spot channel closed by consumer"
        super().__init__(self.message)

    def __str__(self):
        return self.message


class ParseError(ValueError):
    """Base class for spot candidates that could not be parsed."""

    def __init__(self, line, message=None):
        self.line = line
        self.message = message or f"Could not parse spot: {line!r}"
        super().__init__(self.message)

    def __str__(self):
        return self.message


class BadFrequency(ParseError):
    """Raised when the frequency token is missing or not a decimal number."""
    def __init__(self, line, token=None):
        self.token = token
        super().__init__(line, f"Bad frequency {token!r} in spot: {line!r}")


class MissingTimestamp(ParseError):
    """Raised when the spot has no trailing HHMM time token."""
    def __init__(self, line):
        super().__init__(line, f"No time token in spot: {line!r}")


class BadCallsign(ParseError):
    """Raised when the dx callsign is missing or not callsign-shaped."""
    def __init__(self, line, token=None):
        self.token = token
        super().__init__(line, f"Bad dx callsign {token!r} in spot: {line!r}")


class ConfigError(ValueError):
    """Raised for invalid or missing configuration."""
