"""Remote store integration with asynchronous operations.

The remote store is an opaque key-value service reached over HTTP. Records are keyed by
username. A ``GET`` returns the user's record (or an error marker when the username is
unknown) and a ``POST`` uploads a new one. The shared identity list travels inside the
administrator's record.

Blocking calls can be moved off the calling thread with :class:`AsyncWorker`.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from PySide6 import QtCore

from ..status import status

DEFAULT_TIMEOUT: int = 30
MAX_RETRIES: int = 3
RETRY_WAIT: float = 2.0

# Failures of the remote store that callers downgrade to a boolean result
REMOTE_ERRORS: Tuple[type, ...] = (
    status.ServiceUnavailableException,
    status.RemoteNotConfiguredException,
)


class AsyncWorker(QtCore.QThread):
    """
    Generic worker thread with retry logic for blocking functions.

    Only :class:`status.ServiceUnavailableException` is retried, any other error is reported
    straight away.

    Signals:
        resultReady (str, object): Emitted with the worker name and the function's result on success.
        errorOccurred (str, object): Emitted with the worker name and the exception on failure.
    """
    resultReady = QtCore.Signal(str, object)
    errorOccurred = QtCore.Signal(str, object)

    def __init__(self, name: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        super().__init__()
        self.name = name
        self.func = func
        self.args = args

        self.max_attempts = max(1, kwargs.pop('max_attempts', MAX_RETRIES))
        self.wait_seconds = kwargs.pop('wait_seconds', RETRY_WAIT)
        self.kwargs = kwargs

    def run(self) -> None:
        attempts = 0
        last_exception = None
        while attempts < self.max_attempts:
            attempts += 1
            try:
                result = self.func(*self.args, **self.kwargs)
                self.resultReady.emit(self.name, result)
                return
            except status.ServiceUnavailableException as ex:
                last_exception = ex
                if attempts < self.max_attempts:
                    logging.debug(f'{self.name}: attempt {attempts}/{self.max_attempts} failed, retrying.')
                    time.sleep(self.wait_seconds)
            except Exception as ex:
                self.errorOccurred.emit(self.name, ex)
                return
        # All retries exhausted
        self.errorOccurred.emit(self.name, last_exception)


def split_record(record: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[List[Dict[str, Any]]]]:
    """Split a remote record into its snapshot and identity list.

    The snapshot may be wrapped in a ``data`` envelope or sit at the top level. A
    top-level record is only taken as a snapshot when it carries ``transactions``.

    Args:
        record: Record as returned by :meth:`RemoteStoreClient.fetch`.

    Returns:
        A tuple of (snapshot or None, identity list or None).
    """
    data: Optional[Dict[str, Any]] = None
    if isinstance(record.get('data'), dict):
        data = record['data']
    elif 'transactions' in record:
        data = {k: v for k, v in record.items() if k != 'identityList'}

    identity_list = record.get('identityList')
    if not isinstance(identity_list, list):
        identity_list = None
    return data, identity_list


class RemoteStoreClient:
    """HTTP client of the remote store.

    Args:
        url: Endpoint of the remote store. An empty url leaves the client unconfigured.
        timeout: Seconds to wait for the remote store before giving up.
        session: Optional ``requests.Session`` to send requests with.
    """

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Any = None, session: Optional[requests.Session] = None) -> 'RemoteStoreClient':
        """Create a client from the ``remote`` config section.

        Args:
            settings: A ``SettingsAPI`` instance. Defaults to the application settings.
            session: Optional ``requests.Session`` to send requests with.
        """
        if settings is None:
            from ..settings import lib
            settings = lib.settings
        config = settings.get_section('remote')
        return cls(config['url'], timeout=config['timeout'], session=session)

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    def _verify_configured(self) -> None:
        if not self.is_configured:
            raise status.RemoteNotConfiguredException

    def fetch(self, username: str) -> Optional[Dict[str, Any]]:
        """Fetch the remote record of a user.

        Args:
            username: The record key.

        Returns:
            The decoded record, or None if the remote store does not know the username.

        Raises:
            status.RemoteNotConfiguredException: If no url is configured.
            status.ServiceUnavailableException: On network errors, HTTP errors or malformed responses.
        """
        self._verify_configured()

        # The timestamp defeats intermediate caches
        params = {'username': username, 't': int(time.time() * 1000)}
        logging.debug(f'Fetching remote record of "{username}"')
        try:
            response = self.session.get(self.url, params=params, timeout=self.timeout)
            response.raise_for_status()
            record = response.json()
        except requests.Timeout as ex:
            raise status.ServiceUnavailableException(f'Timeout fetching "{username}": {ex}') from ex
        except requests.RequestException as ex:
            raise status.ServiceUnavailableException(f'Error fetching "{username}": {ex}') from ex
        except ValueError as ex:
            raise status.ServiceUnavailableException(f'Malformed response for "{username}": {ex}') from ex

        if not isinstance(record, dict):
            raise status.ServiceUnavailableException(f'Unexpected response for "{username}": {type(record)}')

        if 'error' in record:
            logging.info(f'No remote record for "{username}": {record["error"]}')
            return None
        return record

    def upload(self, username: str, data: Dict[str, Any],
               identity_list: Optional[List[Dict[str, Any]]] = None) -> None:
        """Upload a user's snapshot, and optionally the identity list.

        The body is sent as ``text/plain`` JSON.

        Raises:
            status.RemoteNotConfiguredException: If no url is configured.
            status.ServiceUnavailableException: On network or HTTP errors.
        """
        self._verify_configured()

        payload: Dict[str, Any] = {'username': username, 'data': data}
        if identity_list is not None:
            payload['identityList'] = identity_list
        body = json.dumps(payload, ensure_ascii=False).encode('utf-8')

        logging.debug(f'Uploading remote record of "{username}" ({len(body)} bytes)')
        try:
            response = self.session.post(
                self.url,
                data=body,
                headers={'Content-Type': 'text/plain;charset=utf-8'},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.Timeout as ex:
            raise status.ServiceUnavailableException(f'Timeout uploading "{username}": {ex}') from ex
        except requests.RequestException as ex:
            raise status.ServiceUnavailableException(f'Error uploading "{username}": {ex}') from ex
