"""
Customer session expiry, independent of the Podio API token's own lifetime
"""
import time
import logging
from typing import Callable, Optional

from .storage import SESSION_EXPIRY_KEY, Storage

logger = logging.getLogger(__name__)

SESSION_DURATION = 4 * 60 * 60  # seconds


class SessionManager:
    def __init__(self, storage: Storage, clock: Optional[Callable[[], float]] = None,
                 duration: int = SESSION_DURATION, key: str = SESSION_EXPIRY_KEY):
        self.storage = storage
        self.clock = clock or time.time
        self.duration = duration
        self.key = key

    def _expiry(self) -> Optional[float]:
        raw = self.storage.get(self.key)
        if not raw:
            return None
        try:
            return float(raw)
        except ValueError:
            return None

    def start(self) -> float:
        return self.extend()

    def extend(self) -> float:
        expiry = self.clock() + self.duration
        self.storage.set(self.key, str(expiry))
        return expiry

    def is_valid(self) -> bool:
        expiry = self._expiry()
        return expiry is not None and expiry > self.clock()

    def remaining(self) -> int:
        expiry = self._expiry()
        if expiry is None:
            return 0
        return max(int(expiry - self.clock()), 0)

    def end(self):
        self.storage.delete(self.key)
        logger.info("Session ended")
