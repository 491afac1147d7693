"""Exception hierarchy shared by every ocnectl module.

Lower layers raise the most specific type they can and prefix the message
with the resource they were working on. Command handlers catch ``OcneError``
and turn it into a non-zero exit code.
"""


class OcneError(Exception):
    """Base exception for all ocnectl errors."""
    pass


class NotFoundError(OcneError):
    """A resource that was expected to exist is absent."""
    pass


class PreconditionError(OcneError):
    """A cluster or resource is in the wrong state for the requested operation."""
    pass


class TransientRemoteError(OcneError):
    """A remote API call failed in a way that may succeed on retry."""
    pass


class WaitTimeoutError(TransientRemoteError):
    """A polling loop ran out of time."""
    pass


class LockError(TransientRemoteError):
    """The ocnectl lock file could not be acquired."""
    pass


class ValidationError(OcneError):
    """Configuration or a resource document is malformed."""
    pass


class UnsupportedError(OcneError):
    """The operation is not supported by the selected provider."""
    pass


class FatalError(OcneError):
    """Unrecoverable infrastructure failure."""
    pass


class WorkRequestError(FatalError):
    """An asynchronous cloud work request ended in a failed state."""
    pass


class DrainError(FatalError):
    """Draining a node failed. The node is left cordoned."""

    def __init__(self, node_name: str, message: str):
        super().__init__(f"Error draining node {node_name}: {message}")
        self.node_name = node_name


class ConfigurationError(ValidationError):
    """Raised when a template or generated configuration cannot be produced."""
    pass
