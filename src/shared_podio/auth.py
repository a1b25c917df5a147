"""
Podio OAuth Token Manager

Handles token acquisition, expiry tracking, refresh-before-expiry and
rate-limit backoff bookkeeping for the Podio API. Token and rate-limit state
live in a pluggable key-value store (a .env file by default).

Usage:
    from shared_podio import ensure_valid_token

    if ensure_valid_token():
        # Token is valid, proceed with API calls
        pass
"""
import json
import math
import time
import logging
import threading
from email.utils import parsedate_to_datetime
from typing import Callable, Dict, Optional

import requests

from .config import Config, GRANT_APP, _key, get_config
from .models import RateLimitState, Token, TOKEN_SAFETY_MARGIN
from .storage import (
    ACCESS_TOKEN_KEY,
    RATE_LIMIT_KEY,
    REFRESH_TOKEN_KEY,
    TOKEN_EXPIRY_KEY,
    DotenvStorage,
    Storage,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUSES = (420, 429)

EXPIRY_BUFFER = 30 * 60  # refresh half an hour before Podio says the token dies
DEFAULT_EXPIRES_IN = 8 * 60 * 60
AUTH_COOLDOWN = 5  # seconds between authentication attempts

BACKOFF_INITIAL_DELAY = 1
BACKOFF_FACTOR = 2
BACKOFF_MAX_DELAY = 60


def parse_retry_after(response) -> Optional[int]:
    """Seconds to wait, from a Retry-After header or Podio's "wait N seconds" hint"""
    value = None
    headers = getattr(response, 'headers', None)
    if isinstance(headers, dict) or hasattr(headers, 'items'):
        value = headers.get('Retry-After')

    if isinstance(value, (int, float)):
        return max(int(value), 0)
    if isinstance(value, str) and value.strip():
        value = value.strip()
        if value.isdigit():
            return int(value)
        try:
            when = parsedate_to_datetime(value)
            return max(int(math.ceil(when.timestamp() - time.time())), 0)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable Retry-After header: {value!r}")

    try:
        data = response.json()
    except ValueError:
        return None
    description = data.get('error_description') if isinstance(data, dict) else None
    if isinstance(description, str):
        words = description.lower().split()
        for i, word in enumerate(words[:-1]):
            if word == 'wait' and words[i + 1].isdigit():
                return int(words[i + 1])
    return None


class TokenManager:
    """Manages Podio OAuth tokens with automatic refresh"""

    def __init__(self, suffix: str = "", storage: Optional[Storage] = None,
                 clock: Optional[Callable[[], float]] = None, config: Optional[Config] = None):
        self.suffix = suffix
        self.config = config or get_config(suffix)
        self.token_url = self.config.podio_token_url
        self.storage = storage if storage is not None else DotenvStorage()
        self.clock = clock or time.time

        self._guard = threading.Condition()
        self._auth_in_progress = False
        self._last_auth_attempt: Optional[float] = None
        self._last_auth_result = False

    def _k(self, name: str) -> str:
        return _key(name, self.suffix)

    # -- token state -------------------------------------------------------

    def get_token(self) -> Optional[Token]:
        access_token = self.storage.get(self._k(ACCESS_TOKEN_KEY))
        expiry = self.storage.get(self._k(TOKEN_EXPIRY_KEY))
        if not access_token or not expiry:
            return None
        try:
            expires_at = float(expiry)
        except ValueError:
            logger.warning(f"Discarding unreadable token expiry: {expiry!r}")
            return None
        return Token(
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=self.storage.get(self._k(REFRESH_TOKEN_KEY)),
        )

    def get_current_token(self) -> Optional[str]:
        """Get the current access token from storage"""
        return self.storage.get(self._k(ACCESS_TOKEN_KEY))

    def get_refresh_token(self) -> Optional[str]:
        """Get the refresh token from storage"""
        return self.storage.get(self._k(REFRESH_TOKEN_KEY))

    def has_valid_token(self) -> bool:
        """True when a stored token has at least the safety margin left"""
        token = self.get_token()
        return token is not None and token.is_usable(self.clock(), TOKEN_SAFETY_MARGIN)

    def save_tokens(self, token_data: dict) -> bool:
        """Store a token endpoint response"""
        access_token = token_data.get('access_token') if isinstance(token_data, dict) else None
        if not isinstance(access_token, str) or not access_token:
            logger.error("Token response did not contain an access_token")
            return False

        try:
            expires_in = int(token_data.get('expires_in') or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        expires_at = self.clock() + max(expires_in - EXPIRY_BUFFER, 0)

        try:
            self.storage.set(self._k(ACCESS_TOKEN_KEY), access_token)
            self.storage.set(self._k(TOKEN_EXPIRY_KEY), str(expires_at))
            if token_data.get('refresh_token'):
                self.storage.set(self._k(REFRESH_TOKEN_KEY), token_data['refresh_token'])
            return True
        except OSError as e:
            logger.error(f"Error saving tokens: {e}")
            return False

    def clear_tokens(self):
        for name in (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY):
            self.storage.delete(self._k(name))
        logger.info("Cleared Podio tokens")

    def invalidate(self):
        """Drop the access token after the API rejected it. The refresh token is kept."""
        for name in (ACCESS_TOKEN_KEY, TOKEN_EXPIRY_KEY):
            self.storage.delete(self._k(name))
        logger.info("Invalidated Podio access token")

    # -- token endpoint ----------------------------------------------------

    def _grant_data(self) -> dict:
        data = {
            'grant_type': self.config.podio_grant_type,
            'client_id': self.config.podio_client_id,
            'client_secret': self.config.podio_client_secret,
        }
        if self.config.podio_grant_type == GRANT_APP:
            data['app_id'] = self.config.podio_contacts_app_id
            data['app_token'] = self.config.podio_app_token
        return data

    def _request_token(self, data: dict) -> bool:
        """POST to the token endpoint and store the result. Never raises."""
        try:
            response = requests.post(
                self.token_url,
                data=data,
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
                timeout=self.config.request_timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Error contacting Podio token endpoint: {e}")
            return False

        if response.status_code in RATE_LIMIT_STATUSES:
            self.record_rate_limit(parse_retry_after(response), endpoint='oauth/token')
            return False

        if not 200 <= response.status_code < 300:
            logger.error(f"Token request ({data.get('grant_type')}) failed with HTTP {response.status_code}: "
                         f"{getattr(response, 'text', '')[:200]}")
            return False

        try:
            token_data = response.json()
        except ValueError as e:
            logger.error(f"Token endpoint returned invalid JSON: {e}")
            return False

        if isinstance(token_data, dict) and token_data.get('error'):
            logger.error(f"Token endpoint error: {token_data.get('error_description') or token_data['error']}")
            return False

        if not self.save_tokens(token_data):
            return False
        self.record_success()
        return True

    def authenticate(self, force: bool = False) -> bool:
        """
        Client-credentials (or app) grant. Returns False instead of raising.

        ``force`` skips the cooldown between attempts, for re-authenticating
        after the API rejected a token that was just issued.
        """
        if not self.config.is_configured:
            logger.error("PODIO_CLIENT_ID or PODIO_CLIENT_SECRET not configured")
            return False

        with self._guard:
            if self._auth_in_progress:
                logger.info("Authentication already in progress, waiting for its result")
                finished = self._guard.wait_for(lambda: not self._auth_in_progress,
                                                timeout=self.config.request_timeout * 2)
                if not finished:
                    logger.error("Timed out waiting for the in-flight authentication")
                    return False
                return self._last_auth_result

            now = self.clock()
            if (not force and self._last_auth_attempt is not None
                    and now - self._last_auth_attempt < AUTH_COOLDOWN):
                logger.warning("Authentication attempted too soon after the previous attempt")
                return self.has_valid_token()

            if self.is_rate_limited():
                logger.error(f"Rate limited. Please wait {self.rate_limit_remaining()} seconds before trying again.")
                return False

            self._auth_in_progress = True
            self._last_auth_attempt = now

        result = False
        try:
            logger.info(f"Authenticating with Podio ({self.config.podio_grant_type} grant)")
            result = self._request_token(self._grant_data())
        finally:
            with self._guard:
                self._auth_in_progress = False
                self._last_auth_result = result
                self._guard.notify_all()
        return result

    def refresh(self) -> bool:
        """Use the stored refresh token to get a new access token"""
        refresh_token = self.get_refresh_token()
        if not refresh_token:
            return False
        if not self.config.is_configured:
            logger.error("PODIO_CLIENT_ID or PODIO_CLIENT_SECRET not configured")
            return False
        if self.is_rate_limited():
            return False

        logger.info("Refreshing Podio access token")
        return self._request_token({
            'grant_type': 'refresh_token',
            'client_id': self.config.podio_client_id,
            'client_secret': self.config.podio_client_secret,
            'refresh_token': refresh_token,
        })

    def ensure_authenticated(self) -> bool:
        """Ensure we have a valid access token, refreshing if necessary"""
        if self.has_valid_token():
            return True
        if self.refresh():
            return True
        return self.authenticate()

    def ensure_valid_token(self) -> bool:
        """Alias of ensure_authenticated()"""
        return self.ensure_authenticated()

    # -- rate limiting -----------------------------------------------------

    def get_rate_limit_state(self) -> RateLimitState:
        raw = self.storage.get(self._k(RATE_LIMIT_KEY))
        if not raw:
            return RateLimitState()
        try:
            return RateLimitState.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError):
            logger.warning("Discarding unreadable rate limit info")
            return RateLimitState()

    def _save_rate_limit_state(self, state: RateLimitState):
        self.storage.set(self._k(RATE_LIMIT_KEY), json.dumps(state.to_dict()))

    def record_rate_limit(self, retry_after: Optional[float] = None, endpoint: Optional[str] = None) -> float:
        """Open a backoff window. Server-supplied Retry-After wins over local backoff."""
        state = self.get_rate_limit_state()
        state.retry_count += 1
        if retry_after is not None and retry_after >= 0:
            delay = float(retry_after)
        else:
            delay = float(min(BACKOFF_INITIAL_DELAY * BACKOFF_FACTOR ** (state.retry_count - 1),
                              BACKOFF_MAX_DELAY))
        state.limited = True
        state.limit_until = self.clock() + delay
        state.endpoint = endpoint
        self._save_rate_limit_state(state)
        logger.warning(f"Rate limit reached on {endpoint or 'unknown endpoint'}: "
                       f"backing off {delay:.0f}s (attempt {state.retry_count})")
        return delay

    def is_rate_limited(self) -> bool:
        """True while a backoff window is open. An elapsed window is cleared here."""
        state = self.get_rate_limit_state()
        if state.limit_until is None:
            return False
        if self.clock() < state.limit_until:
            return True
        state.limited = False
        state.limit_until = None
        state.endpoint = None
        self._save_rate_limit_state(state)
        return False

    def rate_limit_remaining(self) -> int:
        """Whole seconds left in the backoff window, for countdowns"""
        state = self.get_rate_limit_state()
        if state.limit_until is None:
            return 0
        return max(int(math.ceil(state.limit_until - self.clock())), 0)

    def clear_rate_limit(self):
        self.storage.delete(self._k(RATE_LIMIT_KEY))

    def record_success(self):
        """Reset the backoff counter after a call went through"""
        state = self.get_rate_limit_state()
        if state.retry_count or state.limited:
            self._save_rate_limit_state(RateLimitState())


_token_managers: Dict[str, TokenManager] = {}


def get_token_manager(suffix: str = "") -> TokenManager:
    if suffix not in _token_managers:
        _token_managers[suffix] = TokenManager(suffix)
    return _token_managers[suffix]


def ensure_valid_token(suffix: str = "") -> bool:
    return get_token_manager(suffix).ensure_authenticated()
