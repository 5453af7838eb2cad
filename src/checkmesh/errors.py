"""
Error taxonomy for the scheduling and incident pipeline.

None of these are allowed to escape the scheduler tick, a worker loop or the
ingestion endpoint; each is logged and folded into a per-item or per-region
failure at the boundary that catches it.
"""


class CheckMeshError(Exception):
    pass


class TransportError(CheckMeshError):
    """Queue unreachable, or a publish/receive call failed."""

    def __init__(self, message: str, region: str | None = None):
        super().__init__(message)
        self.region = region


class ResultValidationError(CheckMeshError):
    """A single job or result failed schema validation."""


class AuthError(CheckMeshError):
    """The caller presented a wrong or missing shared secret."""


class MalformedPayloadError(CheckMeshError):
    """The batch envelope itself could not be decoded."""


class ProbeError(CheckMeshError):
    """DNS, connect, TLS or timeout failure while probing a target."""


class PersistenceError(CheckMeshError):
    """A write to the store failed."""


class NotificationError(CheckMeshError):
    """Sending a notification to one recipient failed."""

    def __init__(self, message: str, recipient: str | None = None):
        super().__init__(message)
        self.recipient = recipient
