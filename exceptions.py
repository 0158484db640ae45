"""Errors raised by the queue and roster services."""

from typing import List, Optional


class ClinicQueueError(Exception):
    """Base class for all service errors."""


class ValidationError(ClinicQueueError):
    """Input rejected before anything was written (e.g. an empty name)."""


class NotFoundError(ClinicQueueError):
    def __init__(self, kind: str, ident):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} {ident} not found")


class BackendError(ClinicQueueError):
    """The underlying store failed; the message is passed through as is."""


class PartialFailure(ClinicQueueError):
    """A multi-step write stopped partway.  Steps already applied are kept."""

    def __init__(self, message: str, applied: Optional[List] = None):
        self.applied = applied or []
        super().__init__(message)


class ZeroActiveDoctorError(PartialFailure):
    """The roster was cleared but no doctor could be put in charge."""
