"""
Exception types shared across the relay.

Every per-call error is caught inside the call's session task; only
ConfigError is allowed to stop the process, and only at startup.
"""


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigError(RelayError):
    """Raised when configuration is invalid or missing."""


class MalformedEventError(RelayError, ValueError):
    """A wire message could not be parsed or has an unexpected shape."""


class PeerUnavailableError(RelayError):
    """A send was attempted on a peer connection that is not open."""


class TerminationError(RelayError):
    """The telephony control plane rejected or failed the hangup request."""


class LengthError(RelayError, ValueError):
    """PCM input is not a positive, even number of bytes."""
