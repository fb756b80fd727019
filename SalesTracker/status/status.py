"""Status definitions and exceptions for SalesTracker.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., ServiceUnavailableException) for error handling in services
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    ConfigNotFound = enum.auto()
    ConfigInvalid = enum.auto()

    # Local persistence
    LocalStoreInvalid = enum.auto()

    # Remote store status
    RemoteNotConfigured = enum.auto()
    ServiceUnavailable = enum.auto()

    # Identity and session status
    IdentityNotFound = enum.auto()
    NoActiveSession = enum.auto()
    PermissionDenied = enum.auto()
    UsernameTaken = enum.auto()
    SeededUserImmutable = enum.auto()

    # Transfer status
    DecodeFailure = enum.auto()

    # Inventory pre-conditions
    InsufficientStock = enum.auto()
    InsufficientDamagedStock = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.ConfigNotFound: 'Could not find the application config.',
    Status.ConfigInvalid: 'The application config seems to be incomplete, or contains invalid values.',

    Status.LocalStoreInvalid: 'The local data store could not be opened.',

    Status.RemoteNotConfigured: 'The remote store address is not configured.',
    Status.ServiceUnavailable: 'The remote store is unavailable. Please check your connection.',

    Status.IdentityNotFound: 'Wrong username or password.',
    Status.NoActiveSession: 'Nobody is signed in.',
    Status.PermissionDenied: 'Only an administrator can do this.',
    Status.UsernameTaken: 'The username is already taken.',
    Status.SeededUserImmutable: 'The built-in users cannot be deleted.',

    Status.DecodeFailure: 'The file or code is corrupt or not a valid backup.',

    Status.InsufficientStock: 'Not enough stock.',
    Status.InsufficientDamagedStock: 'Not enough damaged stock.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in SalesTracker.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..signals import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class ConfigNotFoundException(BaseStatusException):
    """Exception raised when the application config file cannot be found."""
    status = Status.ConfigNotFound


class ConfigInvalidException(BaseStatusException):
    """Exception raised when the application config is invalid or malformed."""
    status = Status.ConfigInvalid


class LocalStoreInvalidException(BaseStatusException):
    """Exception raised when the local store cannot be opened or recreated."""
    status = Status.LocalStoreInvalid


class RemoteNotConfiguredException(BaseStatusException):
    """Exception raised when no remote store URL is configured."""
    status = Status.RemoteNotConfigured


class ServiceUnavailableException(BaseStatusException):
    """Exception raised when the remote store cannot be reached or answers with an error."""
    status = Status.ServiceUnavailable


class NoActiveSessionException(BaseStatusException):
    """Exception raised when a data operation is attempted without an active identity."""
    status = Status.NoActiveSession


class PermissionDeniedException(BaseStatusException):
    """Exception raised when a member attempts an administrator action."""
    status = Status.PermissionDenied


class UsernameTakenException(BaseStatusException):
    """Exception raised when adding a user whose username already exists."""
    status = Status.UsernameTaken


class SeededUserImmutableException(BaseStatusException):
    """Exception raised when deleting one of the built-in users."""
    status = Status.SeededUserImmutable


class DecodeFailureException(BaseStatusException):
    """Exception raised when an import payload cannot be decoded."""
    status = Status.DecodeFailure


class InsufficientStockException(BaseStatusException):
    """Exception raised when an operation would take more good stock than available."""
    status = Status.InsufficientStock


class InsufficientDamagedStockException(BaseStatusException):
    """Exception raised when an operation would take more damaged stock than available."""
    status = Status.InsufficientDamagedStock
