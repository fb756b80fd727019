"""Process-wide Qt signals for SalesTracker.

Component-level events (snapshot changes, identity activation, sync progress) are
declared on the components themselves. This module only carries the signals that any
part of the application may emit without holding a reference to a component.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for application-wide error reporting."""
    # User-facing error message raised by a status exception
    error = QtCore.Signal(str)
    # Formatted log record at ERROR level or above
    errorLogged = QtCore.Signal(str)


signals = Signals()
