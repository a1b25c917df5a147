"""
Snapshot cache for read paths

Domain objects are cached as JSON so a read can fall back to the last good
copy while Podio is rate limiting us or unreachable.
"""
import json
import logging
import re
from typing import Any, List, Optional

from .storage import CACHE_KEY_PREFIX, Storage

logger = logging.getLogger(__name__)


class SnapshotCache:
    def __init__(self, storage: Storage, prefix: str = CACHE_KEY_PREFIX):
        self.storage = storage
        self.prefix = prefix
        self._index_key = f"{prefix}INDEX"

    def _key(self, name: str) -> str:
        return self.prefix + re.sub(r'[^A-Z0-9]+', '_', name.upper())

    def _names(self) -> List[str]:
        raw = self.storage.get(self._index_key)
        if not raw:
            return []
        try:
            names = json.loads(raw)
        except ValueError:
            return []
        return names if isinstance(names, list) else []

    def put(self, name: str, payload: Any):
        self.storage.set(self._key(name), json.dumps(payload))
        names = self._names()
        if name not in names:
            names.append(name)
            self.storage.set(self._index_key, json.dumps(names))

    def get(self, name: str) -> Optional[Any]:
        raw = self.storage.get(self._key(name))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Dropping corrupt cache entry {name!r}")
            self.storage.delete(self._key(name))
            return None

    def delete(self, name: str):
        self.storage.delete(self._key(name))
        names = self._names()
        if name in names:
            names.remove(name)
            self.storage.set(self._index_key, json.dumps(names))

    def clear(self):
        for name in self._names():
            self.storage.delete(self._key(name))
        self.storage.delete(self._index_key)
