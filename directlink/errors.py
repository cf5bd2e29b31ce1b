"""Exceptions raised and reported by DirectLink."""


class DirectLinkError(Exception):
    """Base class for all DirectLink failures."""


class InvalidShareCodeError(DirectLinkError, ValueError):
    """The address given to join is not a share code."""


class AlreadyActiveError(DirectLinkError):
    """A join is already looking up, racing or connected."""


class HostNotFoundError(DirectLinkError):
    """The registry returned no endpoints for the share code."""


class ConnectionFailedError(DirectLinkError):
    """Every endpoint attempt failed before any handshake completed."""


class ConnectionTimeoutError(DirectLinkError):
    """No endpoint completed a handshake before the race timeout."""


class RaceCancelledError(DirectLinkError):
    """The race was cancelled before it was decided."""

