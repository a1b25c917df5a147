"""
Key-value storage backends for token, rate-limit, session and cache state.

``MemoryStorage`` keeps everything in-process (tests, short-lived scripts).
``DotenvStorage`` persists to a .env file so tokens survive restarts, the same
way the OAuth helper script saves them.
"""
import os
import logging
from pathlib import Path
from typing import Dict, Optional

from dotenv import dotenv_values, set_key, unset_key

logger = logging.getLogger(__name__)

# Fixed storage keys
ACCESS_TOKEN_KEY = 'PODIO_ACCESS_TOKEN'
REFRESH_TOKEN_KEY = 'PODIO_REFRESH_TOKEN'
TOKEN_EXPIRY_KEY = 'PODIO_TOKEN_EXPIRY'
RATE_LIMIT_KEY = 'PODIO_RATE_LIMIT_INFO'
SESSION_EXPIRY_KEY = 'PODIO_SESSION_EXPIRY'
CACHE_KEY_PREFIX = 'PODIO_CACHE_'


def find_env_file() -> str:
    """Find the .env file location"""
    # Look for .env in current directory or parent directories
    current = os.getcwd()
    while True:
        env_path = os.path.join(current, '.env')
        if os.path.exists(env_path):
            return env_path
        parent = os.path.dirname(current)
        if parent == current:
            return '.env'  # Fallback
        current = parent


class Storage:
    """Minimal key-value port used by the token manager, session and cache"""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(Storage):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


class DotenvStorage(Storage):
    """Persists values as KEY=value lines in a .env file"""

    def __init__(self, env_file: Optional[str] = None):
        self.env_file = env_file or find_env_file()

    def get(self, key: str) -> Optional[str]:
        if not os.path.exists(self.env_file):
            return None
        value = dotenv_values(self.env_file).get(key)
        return value if value != '' else None

    def set(self, key: str, value: str) -> None:
        Path(self.env_file).touch(exist_ok=True)
        set_key(self.env_file, key, value)

    def delete(self, key: str) -> None:
        if not os.path.exists(self.env_file):
            return
        if key in dotenv_values(self.env_file):
            unset_key(self.env_file, key)
