"""
Custody Workflow Errors

Interactive operations raise these synchronously; nothing here is swallowed
by the state machine. Dispatch and scheduler errors are captured by their
callers and never roll back a committed transition.
"""
from typing import List, Optional


class CustodyError(Exception):
    """Base class for all custody workflow errors."""

    def __init__(self, message: str, custody_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.custody_id = custody_id


class ValidationError(CustodyError):
    """Malformed or missing input. User-correctable."""

    def __init__(self, message: str, errors: Optional[List[str]] = None, custody_id: Optional[str] = None):
        super().__init__(message, custody_id)
        self.errors = errors or [message]


class CustodyNotFoundError(CustodyError):
    """No custody transaction with the requested id."""


class InvalidTransitionError(CustodyError):
    """Current status does not permit the requested transition."""

    def __init__(self, message: str, custody_id: Optional[str] = None,
                 from_status: Optional[str] = None, to_status: Optional[str] = None):
        super().__init__(message, custody_id)
        self.from_status = from_status
        self.to_status = to_status


class PreconditionError(CustodyError):
    """Cross-field business rule not met (e.g. no replacement vehicle)."""


class DuplicateDecisionError(CustodyError):
    """The approver has already decided on this transaction."""


class ConcurrentModificationError(CustodyError):
    """Another writer changed the transaction first; retried once before surfacing."""


class ImmutableStateError(CustodyError):
    """The transaction has left draft and can no longer be deleted."""


class IntegrationDispatchError(CustodyError):
    """Notification or webhook dispatch failed. Logged and retried by the scheduler."""


class SchedulerTaskError(CustodyError):
    """A single scheduler sweep failed. Does not abort sibling sweeps."""

    def __init__(self, task: str, message: str):
        super().__init__(message)
        self.task = task
