"""
Session management and the in-memory snapshot.

:class:`SessionManager` tracks the active identity and owns its snapshot: the
transactions, stock counts, stock and fuel logs and settings of one user. Snapshots are
fully isolated per user. Every mutation is written to the local store synchronously and
announced with ``snapshotChanged`` so that a remote push can be scheduled.

Mutations do not refuse operations that would drive stock below zero. Callers check
first with :meth:`SessionManager.check_transaction` or :meth:`SessionManager.check_stock_action`.
"""

import copy
import logging
import pathlib
from typing import Any, Dict, List, Optional, Union

from PySide6 import QtCore

from . import database
from . import transfer
from .auth import IdentityRepository, IdentityResolver, User
from ..settings import lib
from ..status import status


class SessionManager(QtCore.QObject):
    """Active identity and snapshot.

    Signals:
        snapshotChanged: Emitted after every mutation of the snapshot.
        identityActivated (User): Emitted after a user logged in or a session was restored.
        identityAboutToBeDeactivated: Emitted before the active user is logged out.
        identityDeactivated: Emitted after the active user was logged out.
    """
    snapshotChanged = QtCore.Signal()
    identityActivated = QtCore.Signal(object)
    identityAboutToBeDeactivated = QtCore.Signal()
    identityDeactivated = QtCore.Signal()

    def __init__(self, store: database.LocalStore, identities: IdentityRepository,
                 resolver: IdentityResolver, config: Optional[lib.SettingsAPI] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._store = store
        self._identities = identities
        self._resolver = resolver
        self._config = config

        self._user: Optional[User] = None
        self._data: Dict[str, Any] = lib.default_user_data()
        self._is_data_ready: bool = False

    @property
    def config(self) -> lib.SettingsAPI:
        return self._config or lib.settings

    @property
    def current_user(self) -> Optional[User]:
        return self._user

    @property
    def is_data_ready(self) -> bool:
        return self._is_data_ready

    @property
    def data(self) -> Dict[str, Any]:
        """A deep copy of the active snapshot."""
        return copy.deepcopy(self._data)

    def _require_session(self) -> User:
        if self._user is None or not self._is_data_ready:
            raise status.NoActiveSessionException
        return self._user

    # Identity

    def login(self, username: str, secret: str) -> bool:
        """Resolve credentials and activate the user.

        Returns:
            bool: False if the credentials do not match any user.
        """
        user = self._resolver.resolve(username, secret)
        if user is None:
            return False
        self._activate(user)
        return True

    def restore_session(self) -> bool:
        """Activate the remembered user, if any.

        Returns:
            bool: True if a session was restored.
        """
        username = self._store.get_json(database.SESSION_KEY)
        if not isinstance(username, str) or not username:
            return False

        self._identities.reload()
        user = self._identities.find(username)
        if user is None:
            logging.warning(f'Remembered user "{username}" no longer exists.')
            self._store.remove(database.SESSION_KEY)
            return False

        logging.debug(f'Restoring session of "{user.username}"')
        self._activate(user)
        return True

    def _activate(self, user: User) -> None:
        if self._user is not None:
            self.logout()

        self._data = self.load_snapshot(user.username)
        self._user = user
        self._is_data_ready = True
        self._store.put_json(database.SESSION_KEY, user.username)
        logging.info(f'Activated "{user.username}"')
        self.identityActivated.emit(user)

    def logout(self) -> None:
        """Deactivate the active user and forget the remembered session."""
        if self._user is None:
            return

        self.identityAboutToBeDeactivated.emit()
        username = self._user.username
        self._store.remove(database.SESSION_KEY)
        self._user = None
        self._is_data_ready = False
        self._data = lib.default_user_data()
        logging.info(f'Logged out "{username}"')
        self.identityDeactivated.emit()

    # Persistence

    def load_snapshot(self, username: str) -> Dict[str, Any]:
        """Load a user's snapshot from the local store.

        Users without a stored snapshot start from the defaults, with their username as
        display name. Stored snapshots of older shapes get the missing defaults filled in.
        """
        stored = self._store.get_json(database.data_key(username))
        if isinstance(stored, dict):
            return lib.merge_user_data(stored, display_name=username)
        if stored is not None:
            logging.warning(f'Stored snapshot of "{username}" is invalid, starting from defaults.')
        return lib.default_user_data(display_name=username)

    def persist(self) -> None:
        """Write the active snapshot to the local store."""
        user = self._require_session()
        self._store.put_json(database.data_key(user.username), self._data)

    def set_data(self, data: Dict[str, Any], notify: bool = False) -> None:
        """Replace the active snapshot wholesale and persist it.

        Args:
            data: The new snapshot, missing fields are filled with defaults.
            notify: Emit ``snapshotChanged`` so that the change is pushed.
        """
        self._require_session()
        self._data = lib.merge_user_data(data)
        self.persist()
        if notify:
            self.snapshotChanged.emit()

    def set_last_sync(self, timestamp: str) -> None:
        """Record the time of the last successful push without scheduling another one."""
        self._require_session()
        self._data['lastSyncTimestamp'] = timestamp
        self.persist()

    def _commit(self) -> None:
        self.persist()
        self.snapshotChanged.emit()

    # Mutations

    def add_transaction(self, kind: str, amount: float, quantity: int = 1) -> Dict[str, Any]:
        """Record a sale.

        Stock-backed kinds take ``quantity`` from the good stock.

        Returns:
            dict: The new transaction.
        """
        self._require_session()
        if kind not in lib.TRANSACTION_KINDS:
            raise ValueError(f'Invalid transaction kind "{kind}", must be one of {lib.TRANSACTION_KINDS}.')

        transaction = {
            'id': database.new_id(),
            'timestamp': database.now_str(),
            'kind': kind,
            'amount': amount,
            'quantity': quantity,
        }
        self._data['transactions'].insert(0, transaction)
        if kind in lib.SIM_TYPES:
            self._data['stock'][kind] = self._data['stock'].get(kind, 0) - quantity

        logging.debug(f'Added {kind} transaction {transaction["id"]} ({quantity} x {amount})')
        self._commit()
        return copy.deepcopy(transaction)

    def remove_transaction(self, transaction_id: int) -> bool:
        """Delete a transaction, giving stock-backed quantities back to the good stock.

        Returns:
            bool: False if no transaction has ``transaction_id``.
        """
        self._require_session()
        transactions: List[Dict[str, Any]] = self._data['transactions']
        transaction = next((t for t in transactions if t.get('id') == transaction_id), None)
        if transaction is None:
            return False

        transactions.remove(transaction)
        kind = transaction.get('kind')
        if kind in lib.SIM_TYPES:
            self._data['stock'][kind] = self._data['stock'].get(kind, 0) + transaction.get('quantity', 0)

        logging.debug(f'Removed transaction {transaction_id}')
        self._commit()
        return True

    def update_stock(self, sim_type: str, quantity: int, action: Union[str, lib.StockAction]) -> Dict[str, Any]:
        """Apply a stock movement and log it.

        Returns:
            dict: The new stock log entry.
        """
        self._require_session()
        if sim_type not in lib.SIM_TYPES:
            raise ValueError(f'Invalid SIM category "{sim_type}", must be one of {lib.SIM_TYPES}.')
        action = lib.StockAction(action)

        good_sign, damaged_sign = lib.STOCK_ACTION_DELTAS[action]
        self._data['stock'][sim_type] = self._data['stock'].get(sim_type, 0) + good_sign * quantity
        self._data['damaged'][sim_type] = self._data['damaged'].get(sim_type, 0) + damaged_sign * quantity

        log = {
            'id': database.new_id(),
            'timestamp': database.now_str(),
            'simType': sim_type,
            'quantity': quantity,
            'action': action.value,
        }
        self._data['stockLogs'].insert(0, log)

        logging.debug(f'Stock {action.value}: {quantity} x {sim_type}')
        self._commit()
        return copy.deepcopy(log)

    def add_fuel_log(self, fuel_type: str, amount_paid: float, odometer_km: float = 0,
                     timestamp: Optional[str] = None) -> Dict[str, Any]:
        """Record a refuel.

        The liters are derived from the configured fuel price at the time of the call.

        Returns:
            dict: The new fuel log entry.
        """
        self._require_session()
        prices = self.config.get_section('fuel_prices')
        if fuel_type not in prices:
            raise ValueError(f'Invalid fuel type "{fuel_type}", must be one of {list(prices)}.')

        log = {
            'id': database.new_id(),
            'timestamp': timestamp or database.now_str(),
            'fuelType': fuel_type,
            'amountPaid': amount_paid,
            'liters': round(amount_paid / prices[fuel_type], 2),
            'odometerKm': odometer_km,
        }
        self._data['fuelLogs'].insert(0, log)

        logging.debug(f'Added fuel log {log["id"]} ({log["liters"]} l of {fuel_type})')
        self._commit()
        return copy.deepcopy(log)

    def remove_fuel_log(self, log_id: int) -> bool:
        """Delete a fuel log entry.

        Returns:
            bool: False if no entry has ``log_id``.
        """
        self._require_session()
        logs: List[Dict[str, Any]] = self._data['fuelLogs']
        log = next((f for f in logs if f.get('id') == log_id), None)
        if log is None:
            return False
        logs.remove(log)
        self._commit()
        return True

    def update_settings(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Merge a partial update into the settings.

        ``priceConfig`` is merged per SIM category.

        Returns:
            dict: The updated settings.

        Raises:
            TypeError, ValueError: If the update is invalid.
        """
        self._require_session()
        partial = lib.validate_user_settings(partial)

        current = lib.merge_settings(self._data.get('settings'))
        price_config = partial.pop('priceConfig', None)
        current.update(partial)
        if price_config:
            current['priceConfig'] = {**current['priceConfig'], **price_config}
        self._data['settings'] = current

        self._commit()
        return copy.deepcopy(current)

    # Pre-checks

    def check_transaction(self, kind: str, quantity: int = 1) -> None:
        """Verify that there is enough stock to sell ``quantity`` of ``kind``.

        Raises:
            status.InsufficientStockException: If the good stock is too low.
        """
        self._require_session()
        if kind not in lib.SIM_TYPES:
            return
        available = self._data['stock'].get(kind, 0)
        if available < quantity:
            raise status.InsufficientStockException(f'{kind}: {available} available, {quantity} needed.')

    def check_stock_action(self, sim_type: str, quantity: int, action: Union[str, lib.StockAction]) -> None:
        """Verify that a stock movement would not drive stock below zero.

        Raises:
            status.InsufficientStockException: If the good stock is too low.
            status.InsufficientDamagedStockException: If the damaged stock is too low.
        """
        self._require_session()
        action = lib.StockAction(action)
        good_sign, damaged_sign = lib.STOCK_ACTION_DELTAS[action]

        available = self._data['stock'].get(sim_type, 0)
        if good_sign < 0 and available < quantity:
            raise status.InsufficientStockException(f'{sim_type}: {available} available, {quantity} needed.')
        damaged = self._data['damaged'].get(sim_type, 0)
        if damaged_sign < 0 and damaged < quantity:
            raise status.InsufficientDamagedStockException(f'{sim_type}: {damaged} damaged, {quantity} needed.')

    def commission(self, sim_type: str, tier: Union[int, lib.WaitTier]) -> float:
        """Return the configured commission of a SIM category for a wait tier."""
        self._require_session()
        return lib.commission(self._data.get('settings'), sim_type, tier)

    # Transfer

    def export_data(self, text_safe: bool = False) -> str:
        """Export the snapshot. Administrators export a full backup with the identity list."""
        user = self._require_session()
        identity_list = self._identities.to_list() if user.is_admin else None
        return transfer.encode(self._data, identity_list=identity_list, text_safe=text_safe)

    def import_data(self, text: str) -> None:
        """Replace the snapshot with an exported one.

        An identity list in the payload is applied only when the active user is an
        administrator.

        Raises:
            status.DecodeFailureException: If the payload is invalid.
        """
        user = self._require_session()
        data, identity_list = transfer.decode(text)

        if identity_list is not None:
            if user.is_admin:
                self._identities.replace(identity_list)
            else:
                logging.info('Ignoring the identity list of the import, the active user is not an administrator.')

        self.set_data(data, notify=True)
        logging.info(f'Imported snapshot of "{user.username}"')

    def export_file(self, path: Union[str, pathlib.Path], text_safe: bool = False) -> pathlib.Path:
        """Write an export to ``path``."""
        path = pathlib.Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.export_data(text_safe=text_safe), encoding='utf-8')
        logging.info(f'Exported to {path}')
        return path

    def import_file(self, path: Union[str, pathlib.Path]) -> None:
        """Import an export written by :meth:`export_file`.

        Raises:
            status.DecodeFailureException: If the file cannot be read or is invalid.
        """
        path = pathlib.Path(path)
        try:
            text = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as ex:
            raise status.DecodeFailureException(f'Could not read {path}: {ex}') from ex
        self.import_data(text)

    # Administration

    def _require_admin(self) -> User:
        user = self._require_session()
        if not user.is_admin:
            raise status.PermissionDeniedException
        return user

    def add_user(self, username: str, secret: str, display_name: Optional[str] = None,
                 role: str = 'member') -> User:
        """Add a user to the identity list. Requires an administrator."""
        self._require_admin()
        return self._identities.add_user(username, secret, display_name=display_name, role=role)

    def delete_user(self, user_id: int) -> bool:
        """Delete a user and its local snapshot. Requires an administrator."""
        admin = self._require_admin()
        if user_id == admin.id:
            raise ValueError('The active user cannot be deleted.')
        return self._identities.delete_user(user_id)
