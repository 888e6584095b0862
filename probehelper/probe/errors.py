"""Probe failure taxonomy."""


class ProbeError(Exception):
    """Base exception for a failed probe invocation."""
    pass


class UnknownProbeKind(ProbeError):
    """Raised when a probe request carries an unrecognized event type."""

    def __init__(self, kind: str):
        super().__init__(f"unrecognized probe kind {kind!r}")
        self.kind = kind


class ProbeValidationError(ProbeError):
    """Raised when a required extension is missing or malformed."""
    pass


class TriggerError(ProbeError):
    """Raised when the external action behind a probe could not be performed."""
    pass


class CorrelationKeyCollision(ProbeError):
    """Raised when a probe is registered while another one holds the same key."""

    def __init__(self, key: str):
        super().__init__(f"a probe is already pending for {key!r}")
        self.key = key
