"""Sync coordinator between the local snapshot and the remote store.

The local store is always the source of truth. Every mutation marks the snapshot dirty
and restarts a single-shot debounce timer. When the timer fires, the latest snapshot is
pushed to the remote store, so a burst of edits results in a single upload. Activating an
identity pulls its remote record and merges it into the local snapshot.

Merging is last-writer-wins at snapshot granularity: every top-level field present in
the remote snapshot replaces the local one wholesale. Settings are merged with the
defaults so that records written by older versions stay usable. An administrator's pull
also replaces the local identity list with the remote one.

Remote failures never propagate: they are logged and reported as ``False``, and local
state is left untouched.
"""
import copy
import enum
import logging
from typing import Any, Dict, List, Optional, Tuple

from PySide6 import QtCore

from . import database
from .auth import IdentityRepository, User
from .service import AsyncWorker, REMOTE_ERRORS, RemoteStoreClient, split_record
from .session import SessionManager
from ..settings import lib
from ..status import status


class SyncState(enum.StrEnum):
    """Enum for sync states."""
    Idle = 'idle'
    Syncing = 'syncing'


class Operation(enum.StrEnum):
    Push = 'push'
    Pull = 'pull'


def merge_snapshot(local: Dict[str, Any], remote: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a remote snapshot into a local one.

    Top-level fields of the remote snapshot replace the local ones. Settings are taken
    from the remote snapshot when it has them, and merged with the defaults.

    Args:
        local: The local snapshot.
        remote: The remote snapshot.

    Returns:
        dict: The merged snapshot.
    """
    merged = {**copy.deepcopy(local), **copy.deepcopy(remote)}
    settings = remote.get('settings') if isinstance(remote.get('settings'), dict) else local.get('settings')
    merged['settings'] = lib.merge_settings(settings)
    return merged


class SyncAPI(QtCore.QObject):
    """Schedules and runs pushes and pulls of the active snapshot.

    Background operations run on :class:`AsyncWorker` threads. Their results are
    delivered back to the thread owning this object, so the snapshot is only ever
    modified from one thread.

    Signals:
        stateChanged (str): Emitted with the new :class:`SyncState`.
        pushFinished (bool): Emitted after a push, True on success.
        pullFinished (bool): Emitted after a pull, True if a remote snapshot was merged.
    """
    stateChanged = QtCore.Signal(str)
    pushFinished = QtCore.Signal(bool)
    pullFinished = QtCore.Signal(bool)

    def __init__(self, session: SessionManager, remote: RemoteStoreClient, identities: IdentityRepository,
                 debounce_ms: Optional[int] = None, pull_on_activate: Optional[bool] = None,
                 max_attempts: Optional[int] = None, retry_wait: Optional[float] = None,
                 config: Optional[lib.SettingsAPI] = None, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.session = session
        self.remote = remote
        self.identities = identities

        self._config = config
        self.debounce_ms = self._option('sync', 'debounce_ms', debounce_ms)
        self.pull_on_activate = self._option('sync', 'pull_on_activate', pull_on_activate)
        self.max_attempts = self._option('remote', 'max_attempts', max_attempts)
        self.retry_wait = self._option('remote', 'retry_wait', retry_wait)

        self._inflight: int = 0
        self._last_sync: Optional[str] = None
        self._workers: List[AsyncWorker] = []

        self._timer = QtCore.QTimer(self)
        self._timer.setSingleShot(True)
        self._timer.setInterval(self.debounce_ms)

        self._connect_signals()

    def _option(self, section: str, key: str, value: Any) -> Any:
        """Return ``value``, or the configured option when it is None."""
        if value is not None:
            return value
        config = self._config if self._config is not None else lib.settings
        return config.get_section(section)[key]

    def _connect_signals(self) -> None:
        self._timer.timeout.connect(self.push_async)
        self.session.snapshotChanged.connect(self.mark_dirty)
        self.identities.usersEdited.connect(self.mark_dirty)
        self.session.identityActivated.connect(self.on_identity_activated)
        self.session.identityAboutToBeDeactivated.connect(self.on_identity_about_to_be_deactivated)

    @property
    def state(self) -> SyncState:
        return SyncState.Syncing if self._inflight > 0 else SyncState.Idle

    @property
    def is_syncing(self) -> bool:
        return self.state == SyncState.Syncing

    @property
    def last_sync(self) -> Optional[str]:
        """UTC ISO timestamp of the last successful push or pull."""
        return self._last_sync

    @property
    def has_pending(self) -> bool:
        """True while a debounced push is scheduled."""
        return self._timer.isActive()

    def _begin(self) -> None:
        self._inflight += 1
        if self._inflight == 1:
            self.stateChanged.emit(SyncState.Syncing.value)

    def _end(self) -> None:
        self._inflight = max(0, self._inflight - 1)
        if self._inflight == 0:
            self.stateChanged.emit(SyncState.Idle.value)

    def set_debounce(self, ms: int) -> None:
        """Change the debounce interval. A pending push keeps its original deadline."""
        self.debounce_ms = int(ms)
        self._timer.setInterval(self.debounce_ms)

    @QtCore.Slot()
    def mark_dirty(self) -> None:
        """(Re)start the debounce timer. Only the latest snapshot is pushed when it fires."""
        if self.session.current_user is None:
            return
        self._timer.start()

    def build_payload(self) -> Tuple[str, Dict[str, Any], Optional[List[Dict[str, Any]]]]:
        """Return the upload of the active user.

        Returns:
            A tuple of (username, snapshot stamped with ``lastSyncTimestamp``, identity list
            for administrators or None).

        Raises:
            status.NoActiveSessionException: If nobody is signed in.
        """
        user: Optional[User] = self.session.current_user
        if user is None:
            raise status.NoActiveSessionException
        data = self.session.data
        data['lastSyncTimestamp'] = database.now_str()
        identity_list = self.identities.to_list() if user.is_admin else None
        return user.username, data, identity_list

    def _upload(self, username: str, data: Dict[str, Any],
                identity_list: Optional[List[Dict[str, Any]]]) -> Tuple[str, str]:
        self.remote.upload(username, data, identity_list=identity_list)
        return username, data['lastSyncTimestamp']

    def _fetch(self, username: str) -> Tuple[str, Optional[Dict[str, Any]]]:
        return username, self.remote.fetch(username)

    def _record_push(self, username: str, timestamp: str) -> None:
        self._last_sync = timestamp
        user = self.session.current_user
        if user is not None and user.username == username:
            self.session.set_last_sync(timestamp)
        logging.info(f'Pushed snapshot of "{username}"')

    def push(self) -> bool:
        """Push the active snapshot now, on the calling thread.

        Returns:
            bool: True on success.
        """
        self._timer.stop()
        if self.session.current_user is None:
            return False

        username, data, identity_list = self.build_payload()
        self._begin()
        try:
            self._upload(username, data, identity_list)
        except REMOTE_ERRORS as ex:
            logging.warning(f'Push of "{username}" failed: {ex}')
            result = False
        else:
            self._record_push(username, data['lastSyncTimestamp'])
            result = True
        finally:
            self._end()

        self.pushFinished.emit(result)
        return result

    def pull(self) -> bool:
        """Pull and merge the active user's remote snapshot now, on the calling thread.

        Returns:
            bool: True if a remote snapshot was merged.
        """
        user = self.session.current_user
        if user is None:
            return False

        self._begin()
        try:
            _, record = self._fetch(user.username)
        except REMOTE_ERRORS as ex:
            logging.warning(f'Pull of "{user.username}" failed: {ex}')
            result = False
        else:
            result = self.apply_remote(user.username, record)
        finally:
            self._end()

        self.pullFinished.emit(result)
        return result

    def apply_remote(self, username: str, record: Optional[Dict[str, Any]]) -> bool:
        """Merge a fetched remote record into the active snapshot.

        Records fetched for a user who is no longer active are discarded. The merged
        snapshot is persisted locally, and any pending push is cancelled.

        Returns:
            bool: True if a remote snapshot was merged.
        """
        user = self.session.current_user
        if user is None or user.username != username:
            logging.debug(f'Discarding remote record of "{username}", the user is no longer active.')
            return False
        if record is None:
            logging.info(f'No remote snapshot for "{username}" yet.')
            return False

        data, identity_list = split_record(record)
        if identity_list is not None and user.is_admin:
            self.identities.replace(identity_list)

        if data is None:
            logging.info(f'Remote record of "{username}" holds no snapshot.')
            return False

        self.session.set_data(merge_snapshot(self.session.data, data))
        # the merged collections supersede whatever push was pending
        self._timer.stop()
        self._last_sync = database.now_str()
        logging.info(f'Merged remote snapshot of "{username}"')
        return True

    def _start_worker(self, operation: Operation, func, *args: Any) -> None:
        self._workers = [w for w in self._workers if not w.isFinished()]

        worker = AsyncWorker(
            operation.value, func, *args,
            max_attempts=self.max_attempts,
            wait_seconds=self.retry_wait,
        )
        worker.resultReady.connect(self.on_worker_result)
        worker.errorOccurred.connect(self.on_worker_error)
        self._workers.append(worker)

        self._begin()
        worker.start()

    @QtCore.Slot()
    def push_async(self) -> None:
        """Push the active snapshot in the background."""
        self._timer.stop()
        if self.session.current_user is None:
            return
        logging.debug('Starting asynchronous push')
        self._start_worker(Operation.Push, self._upload, *self.build_payload())

    @QtCore.Slot()
    def pull_async(self) -> None:
        """Pull and merge the active user's remote snapshot in the background."""
        user = self.session.current_user
        if user is None:
            return
        logging.debug('Starting asynchronous pull')
        self._start_worker(Operation.Pull, self._fetch, user.username)

    @QtCore.Slot(str, object)
    def on_worker_result(self, name: str, result: Any) -> None:
        self._end()
        if name == Operation.Push:
            username, timestamp = result
            self._record_push(username, timestamp)
            self.pushFinished.emit(True)
        elif name == Operation.Pull:
            username, record = result
            self.pullFinished.emit(self.apply_remote(username, record))

    @QtCore.Slot(str, object)
    def on_worker_error(self, name: str, error: Any) -> None:
        self._end()
        if isinstance(error, REMOTE_ERRORS):
            logging.warning(f'Asynchronous {name} failed: {error}')
        else:
            logging.error(f'Asynchronous {name} failed unexpectedly: {error!r}')

        if name == Operation.Push:
            self.pushFinished.emit(False)
        elif name == Operation.Pull:
            self.pullFinished.emit(False)

    def save_now(self, blocking: bool = False) -> Optional[bool]:
        """Cancel the pending debounced push and push immediately.

        Args:
            blocking: Push on the calling thread and return the result.
        """
        if blocking:
            return self.push()
        self.push_async()
        return None

    def pull_now(self, blocking: bool = False) -> Optional[bool]:
        """Pull immediately.

        A pending debounced push is only dropped once a remote snapshot has been merged.
        When the pull fails or finds nothing, the push still goes out.

        Args:
            blocking: Pull on the calling thread and return the result.
        """
        if blocking:
            return self.pull()
        self.pull_async()
        return None

    @QtCore.Slot(object)
    def on_identity_activated(self, user: User) -> None:
        self._timer.stop()
        if self.pull_on_activate:
            logging.debug(f'Pulling remote snapshot of "{user.username}"')
            self.pull_async()

    @QtCore.Slot()
    def on_identity_about_to_be_deactivated(self) -> None:
        if self._timer.isActive():
            logging.debug('Flushing pending push before logout')
            self.push_async()

    def shutdown(self, timeout_ms: int = 30000) -> None:
        """Stop the debounce timer and wait for background operations to finish."""
        self._timer.stop()
        for worker in self._workers:
            if not worker.wait(timeout_ms):
                logging.error(f'Background {worker.name} did not finish in time.')
        self._workers = [w for w in self._workers if not w.isFinished()]
