"""Settings library for application configuration and per-user settings.

Provides:
    - Domain constants (SIM categories, transaction kinds, stock actions, fuel types, seeded users).
    - Defaults, merging and validation for the per-user ``Settings`` carried in each snapshot.
    - Schema validation and enforcement for config.json.
    - Loading, saving and reverting application settings.
"""

import copy
import enum
import json
import logging
import os
import pathlib
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'SalesTracker'

CONFIG_DIR_ENV_KEY: str = 'SALESTRACKER_CONFIG_DIR'

SIM_TYPES: List[str] = ['jawwy', 'sawa', 'multi']
NON_STOCK_KINDS: List[str] = ['issue', 'device']
TRANSACTION_KINDS: List[str] = SIM_TYPES + NON_STOCK_KINDS

FUEL_TYPES: List[str] = ['91', '95', 'diesel']
THEMES: List[str] = ['light', 'dark']
ROLES: List[str] = ['admin', 'member']


class StockAction(enum.StrEnum):
    """Inventory movements recorded in the stock log."""
    Add = 'add'
    ReturnToSupplier = 'return_to_supplier'
    MarkDamaged = 'mark_damaged'
    RecoverFromDamaged = 'recover_from_damaged'
    DiscardDamaged = 'discard_damaged'


# action -> (good stock sign, damaged stock sign)
STOCK_ACTION_DELTAS: Dict[str, tuple] = {
    StockAction.Add: (1, 0),
    StockAction.ReturnToSupplier: (-1, 0),
    StockAction.MarkDamaged: (-1, 1),
    StockAction.RecoverFromDamaged: (1, -1),
    StockAction.DiscardDamaged: (0, -1),
}


class WaitTier(enum.IntEnum):
    """Commission tier index, by how long the customer waited."""
    Short = 0
    Medium = 1
    Long = 2


SEEDED_USERS: List[Dict[str, Any]] = [
    {'id': 1, 'username': 'talal', 'secret': '00966', 'displayName': 'Talal', 'role': 'admin'},
    {'id': 2, 'username': 'khaled', 'secret': '2030', 'displayName': 'Khaled', 'role': 'member'},
]
SEEDED_USER_IDS: List[int] = [u['id'] for u in SEEDED_USERS]

# The remote copy of the shared identity list is stored under this user's record
ADMIN_USERNAME: str = SEEDED_USERS[0]['username']

DEFAULT_USER_SETTINGS: Dict[str, Any] = {
    'displayName': 'Representative',
    'weeklyTarget': 3000,
    'theme': 'light',
    'preferredFuelType': '91',
    'priceConfig': {
        'jawwy': [30, 25, 20],
        'sawa': [28, 24, 20],
        'multi': [28, 24, 20],
    },
}

USER_SETTINGS_SCHEMA: Dict[str, Any] = {
    'displayName': {'type': str},
    'weeklyTarget': {'type': (int, float), 'min': 0},
    'theme': {'type': str, 'allowed_values': THEMES},
    'preferredFuelType': {'type': str, 'allowed_values': FUEL_TYPES},
    'priceConfig': {'type': dict, 'allowed_keys': SIM_TYPES, 'tiers': len(WaitTier)},
}

DEFAULT_CONFIG: Dict[str, Any] = {
    'remote': {
        'url': '',
        'timeout': 30,
        'max_attempts': 3,
        'retry_wait': 2.0,
    },
    'sync': {
        'debounce_ms': 3000,
        'pull_on_activate': True,
    },
    'fuel_prices': {
        '91': 2.18,
        '95': 2.33,
        'diesel': 1.15,
    },
}

CONFIG_SCHEMA: Dict[str, Any] = {
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'url': {'type': str, 'required': True},
            'timeout': {'type': (int, float), 'required': True, 'min': 0},
            'max_attempts': {'type': int, 'required': True, 'min': 1},
            'retry_wait': {'type': (int, float), 'required': True, 'min': 0},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'debounce_ms': {'type': int, 'required': True, 'min': 0},
            'pull_on_activate': {'type': bool, 'required': True},
        }
    },
    'fuel_prices': {
        'type': dict,
        'required': True,
        'item_schema': {
            fuel_type: {'type': (int, float), 'required': True, 'min': 0, 'exclusive_min': True}
            for fuel_type in FUEL_TYPES
        }
    },
}


def _is_number(value: Any, types: Any) -> bool:
    """Check a value against a type spec, refusing booleans for numeric types."""
    if isinstance(value, bool) and bool not in (types if isinstance(types, tuple) else (types,)):
        return False
    return isinstance(value, types)


def default_user_settings() -> Dict[str, Any]:
    """Return a fresh deep copy of the default per-user settings."""
    return copy.deepcopy(DEFAULT_USER_SETTINGS)


def default_user_data(display_name: Optional[str] = None) -> Dict[str, Any]:
    """Return an empty snapshot with default settings.

    Args:
        display_name: Optional display name to put into the settings.

    Returns:
        dict: A new UserData snapshot.
    """
    data = {
        'transactions': [],
        'stock': {k: 0 for k in SIM_TYPES},
        'damaged': {k: 0 for k in SIM_TYPES},
        'stockLogs': [],
        'fuelLogs': [],
        'settings': default_user_settings(),
    }
    if display_name is not None:
        data['settings']['displayName'] = display_name
    return data


def merge_settings(settings: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Carry defaults forward into a possibly older settings shape.

    Top-level keys are merged shallowly and ``priceConfig`` one level deep, so a missing
    SIM category is backfilled without touching the categories that are present.

    Args:
        settings: Settings as persisted or received, may be None or partial.

    Returns:
        dict: Complete settings.
    """
    defaults = default_user_settings()
    if not isinstance(settings, dict):
        return defaults

    merged = {**defaults, **copy.deepcopy(settings)}
    price_config = merged.get('priceConfig')
    if isinstance(price_config, dict):
        merged['priceConfig'] = {**defaults['priceConfig'], **price_config}
    else:
        merged['priceConfig'] = defaults['priceConfig']
    return merged


def merge_user_data(data: Dict[str, Any], display_name: Optional[str] = None) -> Dict[str, Any]:
    """Fill the top-level fields missing from a stored snapshot with defaults.

    Args:
        data: Snapshot as persisted, imported or received.
        display_name: Display name for the defaults.

    Returns:
        dict: Complete snapshot.
    """
    defaults = default_user_data(display_name=display_name)
    merged = {**defaults, **copy.deepcopy(data)}
    settings = data.get('settings')
    merged['settings'] = merge_settings(settings) if isinstance(settings, dict) else defaults['settings']
    return merged


def validate_user_settings(partial: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a partial settings update.

    Args:
        partial: Settings keys to update.

    Returns:
        dict: Copy of the update, with price tiers normalized to lists.

    Raises:
        TypeError: If the update or one of its values has the wrong type.
        ValueError: If a key is unknown or a value is out of range.
    """
    if not isinstance(partial, dict):
        raise TypeError('Settings update must be a dict.')

    out: Dict[str, Any] = {}
    for key, value in partial.items():
        if key not in USER_SETTINGS_SCHEMA:
            raise ValueError(f'Unknown settings key "{key}", must be one of {list(USER_SETTINGS_SCHEMA)}.')
        spec = USER_SETTINGS_SCHEMA[key]
        if not _is_number(value, spec['type']):
            raise TypeError(f'Settings key "{key}" must be {spec["type"]}, got {type(value)}.')
        if 'allowed_values' in spec and value not in spec['allowed_values']:
            raise ValueError(f'Settings key "{key}" must be one of {spec["allowed_values"]}, got "{value}".')
        if 'min' in spec and value < spec['min']:
            raise ValueError(f'Settings key "{key}" must be >= {spec["min"]}, got {value}.')

        if key == 'priceConfig':
            prices: Dict[str, List[float]] = {}
            for sim_type, tiers in value.items():
                if sim_type not in spec['allowed_keys']:
                    raise ValueError(f'Unknown SIM category "{sim_type}" in priceConfig.')
                if not isinstance(tiers, (list, tuple)) or len(tiers) != spec['tiers']:
                    raise ValueError(f'priceConfig["{sim_type}"] must hold {spec["tiers"]} tiers.')
                for tier in tiers:
                    if not _is_number(tier, (int, float)) or tier < 0:
                        raise ValueError(f'priceConfig["{sim_type}"] tiers must be non-negative numbers.')
                prices[sim_type] = list(tiers)
            value = prices
        out[key] = value
    return out


def commission(settings: Dict[str, Any], sim_type: str, tier: WaitTier) -> float:
    """Return the configured commission of a SIM category for a wait tier."""
    if sim_type not in SIM_TYPES:
        raise ValueError(f'"{sim_type}" is not a SIM category.')
    tiers = merge_settings(settings)['priceConfig'][sim_type]
    return tiers[WaitTier(tier)]


def _validate_section(name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate a config section against its item schema.

    Args:
        name: Section name, used in error messages.
        section: Section data.
        item_schema: Dict describing required fields, types and lower bounds.

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a required field is missing or out of range.
    """
    logging.debug(f'Validating "{name}" section.')
    for field, specs in item_schema.items():
        if field not in section:
            if specs.get('required'):
                msg = f'Section "{name}" missing "{field}".'
                logging.error(msg)
                raise ValueError(msg)
            continue
        value = section[field]
        if not _is_number(value, specs['type']):
            msg = f'Section "{name}" field "{field}" must be {specs["type"]}, got {type(value)}.'
            logging.error(msg)
            raise TypeError(msg)
        if 'min' in specs:
            too_small = value <= specs['min'] if specs.get('exclusive_min') else value < specs['min']
            if too_small:
                msg = f'Section "{name}" field "{field}" is out of range: {value}.'
                logging.error(msg)
                raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure the default config exists.

    The application data directory is resolved through Qt's standard paths unless a
    directory is given explicitly or through the ``SALESTRACKER_CONFIG_DIR`` environment
    variable.
    """

    def __init__(self, root_dir: Optional[str] = None) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')

        if root_dir is None:
            root_dir = os.environ.get(CONFIG_DIR_ENV_KEY) or None
        if root_dir is None:
            root_dir = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        app_data_dir = pathlib.Path(root_dir)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.root_dir: pathlib.Path = app_data_dir
        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.db_dir: pathlib.Path = app_data_dir / 'db'

        self.config_path: pathlib.Path = self.config_dir / 'config.json'
        self.db_path: pathlib.Path = self.db_dir / 'store.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Create missing directories and write the default config if absent."""
        for path in (self.config_dir, self.db_dir):
            if not path.exists():
                logging.debug(f'Creating directory: {path}')
                path.mkdir(parents=True, exist_ok=True)

        if not self.config_path.exists():
            logging.debug(f'Writing default config to {self.config_path}')
            self.revert_config_to_template()

    def revert_config_to_template(self) -> None:
        """Restore config.json from the built-in defaults."""
        with self.config_path.open('w', encoding='utf-8') as f:
            json.dump(DEFAULT_CONFIG, f, indent=4, ensure_ascii=False)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save config.json sections.
    """

    def __init__(self, root_dir: Optional[str] = None) -> None:
        super().__init__(root_dir=root_dir)

        self.config_data: Dict[str, Any] = {}
        for k in CONFIG_SCHEMA.keys():
            self.config_data[k] = {}

        self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """Load config.json from disk, fill missing keys from the defaults and validate.

        Returns:
            The loaded config data dictionary.

        Raises:
            status.ConfigNotFoundException: If config.json file is missing.
            status.ConfigInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading config from "{self.config_path}"')
        if not self.config_path.exists():
            raise status.ConfigNotFoundException

        try:
            with self.config_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            if not isinstance(data, dict):
                raise TypeError('config.json must contain an object.')
            for section, defaults in DEFAULT_CONFIG.items():
                stored = data.get(section)
                data[section] = {**defaults, **stored} if isinstance(stored, dict) else copy.deepcopy(defaults)
            self.validate_config_data(data)
            self.config_data = data
            return self.config_data
        except Exception as ex:
            raise status.ConfigInvalidException from ex

    def validate_config_data(self, data: Dict[str, Any] = None) -> None:
        """Validate config data against CONFIG_SCHEMA.

        Args:
            data (dict, optional): Config data to validate. Defaults to self.config_data.

        Raises:
            RuntimeError: If data is empty.
            TypeError, ValueError: If a section fails validation.
        """
        if data is None:
            data = self.config_data
        if not data:
            raise RuntimeError('Config data is empty.')

        for field, specs in CONFIG_SCHEMA.items():
            if specs.get('required') and field not in data:
                raise ValueError(f'Missing required field: {field}')
            if field not in data:
                continue
            if not isinstance(data[field], specs['type']):
                raise TypeError(f'Field "{field}" must be {specs["type"]}, got {type(data[field])}.')
            _validate_section(field, data[field], specs['item_schema'])

        logging.debug('Config data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a config section.

        Raises:
            KeyError: If section_name is not in config_data.
        """
        return self.config_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a config section.

        The previous section data is restored if validation fails.

        Raises:
            ValueError: If section_name is unknown or the data is invalid.
            TypeError: If a value has the wrong type.
        """
        if section_name not in self.config_data:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.config_data[section_name].copy()
        self.config_data[section_name] = new_data
        try:
            self.validate_config_data()
            self.save_section(section_name)
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.config_data[section_name] = current_section_data
            raise

    def revert_section(self, section_name: str) -> None:
        """Revert a config section to its default and save."""
        if section_name not in DEFAULT_CONFIG:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)
        self.config_data[section_name] = copy.deepcopy(DEFAULT_CONFIG[section_name])
        self.save_section(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single config section.

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name not in self.config_data:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.config_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.config_data[section_name]

        with self.config_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)


settings: SettingsAPI = SettingsAPI()
