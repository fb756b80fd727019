"""
SalesTracker: local-first data manager for field sales representatives.

This package provides:

- :mod:`SalesTracker.core` – Local store, remote store client, identities, sessions and sync.
- :mod:`SalesTracker.data` – pandas summaries for the dashboard and report pages.
- :mod:`SalesTracker.settings` – Application config and per-user settings.
- :mod:`SalesTracker.status` – Status codes and exceptions.
- :mod:`SalesTracker.log` – Logging setup with an in-memory log tank.

Use :func:`SalesTracker.create_app` to build the components.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('SalesTracker requires Python 3.11 or higher.')

__version__ = '0.1.0'
__description__ = 'SalesTracker: local-first sales, stock and fuel tracking with remote sync.'

from .log import log

log.setup_logging()


def create_app(config_dir=None):
    """Build the application components and restore the remembered session.

    Args:
        config_dir (str, optional): Application data directory. Defaults to the
            platform's application data location.

    Returns:
        SalesTracker.core.app.Application: The wired components.
    """
    from .core.app import Application
    from .settings import lib

    config = lib.SettingsAPI(root_dir=config_dir) if config_dir else lib.settings
    app = Application(config=config)
    app.start()
    return app
