"""Backup and transfer format for snapshots.

A transfer payload is UTF-8 JSON. Member exports hold the bare snapshot. Administrator
exports are full backups that carry the identity list as well::

    {"meta": {"type": "full_backup", "date": ...}, "identityList": [...], "data": {...}}

For clipboard transport the JSON can be wrapped in base64.
"""
import base64
import binascii
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from .database import now_str
from ..status import status

BACKUP_TYPE: str = 'full_backup'


def encode(data: Dict[str, Any], identity_list: Optional[List[Dict[str, Any]]] = None,
           text_safe: bool = False) -> str:
    """Serialize a snapshot.

    Args:
        data: The snapshot.
        identity_list: Identity list to include, makes the payload a full backup.
        text_safe: Wrap the JSON in base64.

    Returns:
        str: The encoded payload.
    """
    if identity_list is not None:
        payload: Dict[str, Any] = {
            'meta': {'type': BACKUP_TYPE, 'date': now_str()},
            'identityList': identity_list,
            'data': data,
        }
    else:
        payload = data

    text = json.dumps(payload, ensure_ascii=False, indent=2)
    if text_safe:
        return base64.b64encode(text.encode('utf-8')).decode('ascii')
    return text


def _parse(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        pass

    logging.debug('Payload is not JSON, trying base64.')
    try:
        raw = base64.b64decode(''.join(text.split()), validate=True)
        return json.loads(raw.decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError) as ex:
        raise status.DecodeFailureException(f'{ex}') from ex


def decode(text: str) -> Tuple[Dict[str, Any], Optional[List[Dict[str, Any]]]]:
    """Parse a transfer payload.

    Plain JSON is tried first, base64-wrapped JSON second.

    Args:
        text: The payload.

    Returns:
        A tuple of (snapshot, identity list or None).

    Raises:
        status.DecodeFailureException: If the payload cannot be parsed or holds no snapshot.
    """
    if not isinstance(text, str) or not text.strip():
        raise status.DecodeFailureException('The payload is empty.')

    parsed = _parse(text)
    if not isinstance(parsed, dict):
        raise status.DecodeFailureException('The payload is not an object.')

    if isinstance(parsed.get('data'), dict):
        data = parsed['data']
    elif isinstance(parsed.get('transactions'), list):
        data = {k: v for k, v in parsed.items() if k != 'identityList'}
    else:
        raise status.DecodeFailureException('The payload holds no snapshot.')

    identity_list = parsed.get('identityList')
    if not isinstance(identity_list, list):
        identity_list = None
    return data, identity_list
