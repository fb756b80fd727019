"""
Identity list management and credential resolution.

The identity list is shared by every user of the device. It is kept in the local store,
and its canonical remote copy travels inside the administrator's remote record. Usernames
are unique case-insensitively. Secrets are compared exactly and are not hashed: they are
shared convenience codes, not security credentials.
"""

import dataclasses
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Union

from PySide6 import QtCore

from . import database
from .service import REMOTE_ERRORS, RemoteStoreClient, split_record
from ..settings import lib
from ..status import status


@dataclasses.dataclass
class User:
    """An identity record."""
    id: int
    username: str
    secret: str
    display_name: str
    role: str = 'member'

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        """Create a user from its persisted form.

        Raises:
            TypeError: If ``data`` is not a dict or a field has the wrong type.
            ValueError: If a field is missing or invalid.
        """
        if not isinstance(data, dict):
            raise TypeError(f'User record must be a dict, got {type(data)}.')
        for key in ('id', 'username', 'secret'):
            if key not in data:
                raise ValueError(f'User record is missing "{key}".')
        if not isinstance(data['username'], str) or not data['username']:
            raise ValueError('User record has an empty username.')

        role = data.get('role', 'member')
        if role not in lib.ROLES:
            raise ValueError(f'Invalid role "{role}".')

        return cls(
            id=int(data['id']),
            username=data['username'],
            secret=str(data['secret']),
            display_name=str(data.get('displayName') or data['username']),
            role=role,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'username': self.username,
            'secret': self.secret,
            'displayName': self.display_name,
            'role': self.role,
        }


def parse_users(entries: Iterable[Any]) -> List[User]:
    """Parse identity records, skipping malformed entries."""
    users: List[User] = []
    for entry in entries:
        if isinstance(entry, User):
            users.append(dataclasses.replace(entry))
            continue
        try:
            users.append(User.from_dict(entry))
        except (TypeError, ValueError) as ex:
            logging.warning(f'Skipping malformed identity record: {ex}')
    return users


def seeded_users() -> List[User]:
    return [User.from_dict(u) for u in lib.SEEDED_USERS]


class IdentityRepository(QtCore.QObject):
    """Owns the identity list and its persistence.

    Signals:
        usersEdited: Emitted after a user was added or deleted.
    """
    usersEdited = QtCore.Signal()

    def __init__(self, store: database.LocalStore, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._store = store
        self._lock = threading.Lock()
        self._users: List[User] = seeded_users()
        self.reload()

    def users(self) -> List[User]:
        """Return a copy of the identity list."""
        with self._lock:
            return [dataclasses.replace(u) for u in self._users]

    def to_list(self) -> List[Dict[str, Any]]:
        """Return the identity list in its persisted form."""
        return [u.to_dict() for u in self.users()]

    def reload(self) -> List[User]:
        """Reload the identity list from the local store.

        The in-memory list is kept when nothing is stored. The seeded users are added
        back when missing.
        """
        stored = self._store.get_json(database.IDENTITY_LIST_KEY)
        with self._lock:
            if isinstance(stored, list):
                self._users = parse_users(stored)
            elif stored is not None:
                logging.warning('Stored identity list is not a list, ignoring it.')

            missing = [
                s for s in seeded_users()
                if not any(u.id == s.id or u.username.lower() == s.username.lower() for u in self._users)
            ]
            if missing:
                logging.debug(f'Restoring seeded users: {[u.username for u in missing]}')
                self._users = missing + self._users
            users = list(self._users)

        if missing or stored is None:
            self._save()
        return users

    def find(self, username: str) -> Optional[User]:
        """Return the user with ``username`` compared case-insensitively."""
        name = username.lower()
        with self._lock:
            user = next((u for u in self._users if u.username.lower() == name), None)
        return dataclasses.replace(user) if user else None

    def match(self, username: str, secret: str) -> Optional[User]:
        """Return the user whose username and secret both match."""
        user = self.find(username)
        if user and user.secret == secret:
            return user
        return None

    def replace(self, users: List[Union[User, Dict[str, Any]]]) -> None:
        """Replace the identity list verbatim and persist it."""
        parsed = parse_users(users)
        with self._lock:
            self._users = parsed
        self._save()
        logging.debug(f'Identity list replaced ({len(parsed)} users).')

    def merge(self, users: List[Union[User, Dict[str, Any]]]) -> List[User]:
        """Merge incoming users into the identity list and persist it.

        Incoming users replace local users with the same username.
        """
        incoming = parse_users(users)
        names = {u.username.lower() for u in incoming}
        with self._lock:
            self._users = [u for u in self._users if u.username.lower() not in names] + incoming
            merged = list(self._users)
        self._save()
        logging.debug(f'Merged {len(incoming)} users into the identity list.')
        return merged

    def is_seeded(self, user_id: int) -> bool:
        return user_id in lib.SEEDED_USER_IDS

    def add_user(self, username: str, secret: str, display_name: Optional[str] = None,
                 role: str = 'member') -> User:
        """Add a new user.

        Raises:
            ValueError: If the username or secret is empty or the role is unknown.
            status.UsernameTakenException: If the username already exists.
        """
        username = username.strip() if isinstance(username, str) else ''
        if not username:
            raise ValueError('Username must not be empty.')
        if not secret:
            raise ValueError('Secret must not be empty.')
        if role not in lib.ROLES:
            raise ValueError(f'Invalid role "{role}", must be one of {lib.ROLES}.')
        if self.find(username):
            raise status.UsernameTakenException(f'"{username}"')

        user = User(
            id=database.new_id(),
            username=username,
            secret=str(secret),
            display_name=display_name or username,
            role=role,
        )
        with self._lock:
            self._users.append(user)
        self._save()
        logging.info(f'Added user "{username}" ({role}).')
        self.usersEdited.emit()
        return user

    def delete_user(self, user_id: int) -> bool:
        """Delete a user and its local snapshot.

        Returns:
            bool: False if no user has ``user_id``.

        Raises:
            status.SeededUserImmutableException: If the user is one of the seeded users.
        """
        if self.is_seeded(user_id):
            raise status.SeededUserImmutableException

        with self._lock:
            user = next((u for u in self._users if u.id == user_id), None)
            if user is None:
                return False
            self._users.remove(user)
        self._save()
        self._store.remove(database.data_key(user.username))
        logging.info(f'Deleted user "{user.username}".')
        self.usersEdited.emit()
        return True

    def _save(self) -> None:
        self._store.put_json(database.IDENTITY_LIST_KEY, self.to_list())


class IdentityResolver:
    """Resolves a username and secret to a user.

    The local identity list is checked first. Only when it has no match is the remote
    copy of the list fetched from the administrator's record.

    Args:
        repository: The identity list.
        remote: Client of the remote store.
        admin_username: Username whose remote record carries the identity list.
    """

    def __init__(self, repository: IdentityRepository, remote: RemoteStoreClient,
                 admin_username: str = lib.ADMIN_USERNAME) -> None:
        self.repository = repository
        self.remote = remote
        self.admin_username = admin_username

    def resolve(self, username: str, secret: str) -> Optional[User]:
        """Resolve credentials to a user.

        Remote failures are logged and treated as no match.

        Returns:
            The matching user, or None.
        """
        if not username:
            return None

        self.repository.reload()
        user = self.repository.match(username, secret)
        if user:
            logging.debug(f'Resolved "{username}" from the local identity list.')
            return user

        logging.debug(f'"{username}" not found locally, checking the remote identity list.')
        try:
            record = self.remote.fetch(self.admin_username)
        except REMOTE_ERRORS as ex:
            logging.warning(f'Remote identity lookup failed: {ex}')
            return None

        remote_users = []
        if record is not None:
            _, identity_list = split_record(record)
            remote_users = parse_users(identity_list or [])

        name = username.lower()
        user = next((u for u in remote_users if u.username.lower() == name and u.secret == secret), None)
        if user is None:
            logging.info(f'{status.get_message(status.Status.IdentityNotFound)} ("{username}")')
            return None

        logging.info(f'Resolved "{username}" from the remote identity list.')
        self.repository.merge(remote_users)
        return user
