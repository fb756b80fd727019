"""Application object wiring the core components together."""
import logging
from typing import Optional

from PySide6 import QtCore

from .auth import IdentityRepository, IdentityResolver
from .database import LocalStore
from .service import RemoteStoreClient
from .session import SessionManager
from .sync import SyncAPI
from ..settings import lib


class Application(QtCore.QObject):
    """Owns one instance of each core component.

    The identity repository is shared by the resolver, the session manager and the sync
    coordinator.

    Args:
        config: Settings to read paths and options from. Defaults to the application settings.
        remote: Remote store client. Defaults to one built from the ``remote`` config section.
    """

    def __init__(self, config: Optional[lib.SettingsAPI] = None, remote: Optional[RemoteStoreClient] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.config = config or lib.settings

        self.store = LocalStore(self.config.db_path)
        self.remote = remote or RemoteStoreClient.from_settings(self.config)
        self.identities = IdentityRepository(self.store, parent=self)
        self.resolver = IdentityResolver(self.identities, self.remote)
        self.session = SessionManager(self.store, self.identities, self.resolver, config=self.config, parent=self)

        self.sync = SyncAPI(self.session, self.remote, self.identities, config=self.config, parent=self)

    def start(self) -> bool:
        """Restore the remembered session, if any.

        Returns:
            bool: True if a user was activated.
        """
        restored = self.session.restore_session()
        if not restored:
            logging.debug('No session to restore.')
        return restored

    def shutdown(self) -> None:
        """Push a pending change and wait for background operations."""
        if self.sync.has_pending:
            self.sync.push()
        self.sync.shutdown()
