import collections
import logging
import sys

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

from ..signals import signals

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

#: Records kept by the tank, older ones are dropped first.
TANK_SIZE = 2000

LEVELS = (logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL)

QT_LEVELS = {
    QtMsgType.QtDebugMsg: logging.DEBUG,
    QtMsgType.QtInfoMsg: logging.INFO,
    QtMsgType.QtWarningMsg: logging.WARNING,
    QtMsgType.QtCriticalMsg: logging.ERROR,
    QtMsgType.QtFatalMsg: logging.CRITICAL,
}


def set_logging_level(level):
    """Set the level of the root logger and of every installed handler.

    Raises:
        ValueError: If ``level`` is not one of the standard levels.
    """
    if not isinstance(level, int) or level not in LEVELS:
        raise ValueError(f'Invalid logging level {level!r}, expected one of {LEVELS}.')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message):
    """Forward a Qt message to the ``Qt`` logger. Fatal messages exit the process."""
    level = QT_LEVELS.get(mode, logging.WARNING)
    logging.getLogger('Qt').log(level, message.strip())
    if mode == QtMsgType.QtFatalMsg:
        sys.exit(1)


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=LOG_LEVEL):
    """Reset the root logger and install the sync history tank.

    Args:
        enable_stream_handler (bool): Also log to stdout.
        enable_qt_handler (bool): Route Qt messages through :func:`qt_message_handler`.
        log_level (int): Level of the root logger and the installed handlers.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers = [TankHandler()]
    if enable_stream_handler:
        handlers.insert(0, logging.StreamHandler(sys.stdout))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


def get_tank_handler():
    """Return the installed :class:`TankHandler`, or None."""
    for handler in logging.getLogger().handlers:
        if isinstance(handler, TankHandler):
            return handler
    return None


class TankHandler(logging.Handler):
    """Keeps the latest formatted records in memory.

    The tank backs the sync history: pushes, pulls and their failures can be listed
    by minimum level. Records at ERROR or above are also announced through
    ``signals.errorLogged``.

    Attributes:
        tank (collections.deque): ``(levelno, message)`` pairs, oldest first.
    """

    def __init__(self, max_records=TANK_SIZE):
        super().__init__()
        self.tank = collections.deque(maxlen=max_records)

    def emit(self, record):
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return

        self.tank.append((record.levelno, message))
        if record.levelno >= logging.ERROR:
            signals.errorLogged.emit(message)

    def get_logs(self, level=logging.NOTSET):
        """Return the stored messages at ``level`` or above."""
        return [message for levelno, message in self.tank if levelno >= level]

    def clear_logs(self):
        self.tank.clear()
