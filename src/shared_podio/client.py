"""
Podio API client for the customer portal

Every request goes through ``PodioClient.call``, which checks the rate-limit
window, makes sure a token is available, retries once after re-authenticating
on 401/403 and turns every failure into a ``shared_podio.exceptions`` error.
"""
import base64
import binascii
import hmac
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

import bcrypt
import requests

from .auth import RATE_LIMIT_STATUSES, TokenManager, parse_retry_after
from .cache import SnapshotCache
from .config import _key, get_config
from .exceptions import (
    ApiError,
    InvalidCredentialsError,
    MalformedResponseError,
    NetworkError,
    NotAuthenticatedError,
    NotConfiguredError,
    PodioError,
    RateLimitedError,
    RequestInProgressError,
)
from .fields import (
    CONTACT_FIELDS,
    PACKING_SPEC_FIELDS,
    build_comments,
    build_contact,
    build_filter,
    build_packing_spec,
    build_update_payload,
    extract_text,
    extract_value,
    map_status,
)
from .models import Comment, Contact, PackingSpec, SpecStatus
from .session import SessionManager
from .storage import CACHE_KEY_PREFIX, SESSION_EXPIRY_KEY, DotenvStorage, Storage

logger = logging.getLogger(__name__)

AUTH_RETRY_STATUSES = (401, 403)
MAX_AUTH_RETRIES = 1

CHANGES_REQUESTED_PREFIX = '[REQUESTED CHANGES BY CUSTOMER]'
BCRYPT_PREFIXES = ('$2a$', '$2b$', '$2y$')

# Failures on these reads fall back to the last cached snapshot
READ_FALLBACK_ERRORS = (RateLimitedError, NetworkError, NotAuthenticatedError)


def verify_password(plain_password: str, stored_password: str) -> bool:
    """Compare against the Contacts app's password field (bcrypt hash or plain text)"""
    if stored_password.startswith(BCRYPT_PREFIXES):
        try:
            return bcrypt.checkpw(plain_password.encode('utf-8'), stored_password.encode('utf-8'))
        except ValueError as e:
            logger.error(f"Password verification error: {e}")
            return False
    return hmac.compare_digest(plain_password.encode('utf-8'), stored_password.encode('utf-8'))


def should_proceed_without_signature(error: Exception) -> bool:
    """Non-critical upload failures (format, size) should not block an approval"""
    message = str(error).lower()
    return 'file' in message and any(word in message for word in ('format', 'size', 'upload'))


def _decode_file(data: Union[bytes, str]) -> Tuple[bytes, str]:
    if isinstance(data, bytes):
        return data, 'application/octet-stream'
    header, sep, encoded = data.partition(',')
    if not sep or not header.startswith('data:'):
        raise ValueError("Invalid file data: expected a data URL for upload")
    mimetype = header[len('data:'):].split(';')[0] or 'application/octet-stream'
    try:
        return base64.b64decode(encoded, validate=True), mimetype
    except binascii.Error as e:
        raise ValueError(f"Invalid file data format for upload: {e}") from e


class PodioClient:
    def __init__(self, suffix: str = "", token_manager: Optional[TokenManager] = None,
                 storage: Optional[Storage] = None, clock: Optional[Callable[[], float]] = None):
        self.config = get_config(suffix)
        self.suffix = suffix
        self.base_url = self.config.podio_api_url
        if token_manager is None:
            token_manager = TokenManager(
                suffix,
                storage=storage if storage is not None else DotenvStorage(),
                clock=clock,
                config=self.config,
            )
        self.token_manager = token_manager
        self.storage = token_manager.storage
        self.session = SessionManager(self.storage, clock=token_manager.clock,
                                      key=_key(SESSION_EXPIRY_KEY, suffix))
        self.cache = SnapshotCache(self.storage, prefix=_key(CACHE_KEY_PREFIX.rstrip('_'), suffix) + '_')

        self._in_flight: Set[Tuple[str, str]] = set()
        self._in_flight_lock = threading.Lock()

    # -- transport ---------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'{self.config.podio_auth_scheme} {self.token_manager.get_current_token()}',
            'Accept': 'application/json',
        }

    def _send(self, method: str, url: str, body: Any, params: Optional[dict], files: Optional[dict]):
        kwargs: Dict[str, Any] = {
            'headers': self._headers(),
            'params': params,
            'timeout': self.config.request_timeout,
        }
        if files is not None:
            kwargs['files'] = files
            kwargs['data'] = body
        elif body is not None:
            kwargs['json'] = body
        try:
            return requests.request(method, url, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error calling {method} {url}: {e}")
            raise NetworkError(f"Network error during API call: {e}") from e

    @staticmethod
    def _error_body(response) -> Any:
        try:
            return response.json()
        except ValueError:
            return getattr(response, 'text', '')

    @staticmethod
    def _parse(response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Podio returned a non-JSON body: {e}") from e

    def call(self, endpoint: str, method: str = 'GET', body: Any = None,
             params: Optional[dict] = None, files: Optional[dict] = None, dedupe: bool = True) -> Any:
        """Make an authenticated Podio API call and return the decoded JSON"""
        method = method.upper()
        endpoint = endpoint.lstrip('/')
        key = (method, endpoint)

        if dedupe:
            with self._in_flight_lock:
                if key in self._in_flight:
                    raise RequestInProgressError(f"{method} {endpoint} is already in progress")
                self._in_flight.add(key)
        try:
            return self._call(endpoint, method, body, params, files)
        finally:
            if dedupe:
                with self._in_flight_lock:
                    self._in_flight.discard(key)

    def _rate_limited_error(self, endpoint: str) -> RateLimitedError:
        remaining = self.token_manager.rate_limit_remaining()
        return RateLimitedError(
            f"Rate limited. Please wait {remaining} seconds before trying again.",
            retry_after=remaining,
            endpoint=endpoint,
        )

    def _call(self, endpoint: str, method: str, body: Any, params: Optional[dict], files: Optional[dict]) -> Any:
        if self.token_manager.is_rate_limited():
            raise self._rate_limited_error(endpoint)

        if not self.config.is_configured:
            raise NotConfiguredError("PODIO_CLIENT_ID and PODIO_CLIENT_SECRET must be set")

        if not self.token_manager.ensure_authenticated():
            if self.token_manager.is_rate_limited():
                raise self._rate_limited_error(endpoint)
            raise NotAuthenticatedError("Not authenticated with Podio")

        url = f"{self.base_url}/{endpoint}"
        response = None
        for attempt in range(MAX_AUTH_RETRIES + 1):
            response = self._send(method, url, body, params, files)

            if response.status_code in RATE_LIMIT_STATUSES:
                self.token_manager.record_rate_limit(parse_retry_after(response), endpoint)
                raise self._rate_limited_error(endpoint)

            if response.status_code not in AUTH_RETRY_STATUSES:
                break

            if attempt >= MAX_AUTH_RETRIES:
                raise NotAuthenticatedError(
                    f"Podio rejected {method} {endpoint} with HTTP {response.status_code} after re-authenticating")

            logger.warning(f"API call returned {response.status_code}, re-authenticating and retrying once")
            self.token_manager.invalidate()
            if not (self.token_manager.refresh() or self.token_manager.authenticate(force=True)):
                raise NotAuthenticatedError("Failed to re-authenticate with Podio")

        if not 200 <= response.status_code < 300:
            raise ApiError(response.status_code, self._error_body(response))

        self.token_manager.record_success()
        return self._parse(response)

    # -- reads with cache fallback -----------------------------------------

    def _read_with_fallback(self, cache_name: str, fetch: Callable[[], Any]) -> Any:
        try:
            payload = fetch()
        except READ_FALLBACK_ERRORS as e:
            cached = self.cache.get(cache_name)
            if cached is None:
                raise
            logger.warning(f"Using cached {cache_name} after error: {e}")
            return cached
        if payload is not None:
            self.cache.put(cache_name, payload)
        return payload

    # -- customer login ----------------------------------------------------

    def authenticate_user(self, username: str, password: str) -> Contact:
        """Log a customer in against the Contacts app"""
        if not username or not password:
            raise InvalidCredentialsError()

        app_id = self.config.require_app_id('podio_contacts_app_id')
        response = self.call(
            f"item/app/{app_id}/filter/", 'POST',
            build_filter(CONTACT_FIELDS['username'], username),
        )
        items = response.get('items') if isinstance(response, dict) else None

        # Podio text filters are partial matches, so confirm the username exactly
        item = next(
            (i for i in items or []
             if extract_text(i.get('fields'), CONTACT_FIELDS['username']) == username),
            None,
        )
        if item is None:
            logger.info("No contact matched the supplied username")
            raise InvalidCredentialsError()

        stored_password = extract_value(item.get('fields'), CONTACT_FIELDS['password'])
        if not isinstance(stored_password, str) or not stored_password:
            logger.error(f"Contact {item.get('item_id')} has no portal password set")
            raise InvalidCredentialsError()
        if not verify_password(password, stored_password):
            logger.info("Password verification failed")
            raise InvalidCredentialsError()

        contact = build_contact(item)
        if contact is None:
            raise MalformedResponseError("Could not process contact data")

        self.session.start()
        self.cache.put('user', contact.to_dict())
        logger.info(f"Authentication successful for user: {contact.username}")
        return contact

    def get_current_user(self) -> Optional[Contact]:
        """Cached contact for the active session, or None once the session has expired"""
        if not self.session.is_valid():
            return None
        data = self.cache.get('user')
        return Contact.from_dict(data) if data else None

    def logout(self):
        self.session.end()
        self.cache.clear()
        self.token_manager.clear_tokens()

    def validate_contacts_app_access(self) -> bool:
        app_id = self.config.require_app_id('podio_contacts_app_id')
        try:
            self.call(f"app/{app_id}")
            return True
        except (NotAuthenticatedError, ApiError) as e:
            logger.error(f"No access to Contacts app {app_id}: {e}")
            return False

    # -- packing specs -----------------------------------------------------

    def get_packing_specs_for_contact(self, contact_id: int, force_refresh: bool = False) -> List[PackingSpec]:
        app_id = self.config.require_app_id('podio_packing_spec_app_id')

        def fetch():
            response = self.call(
                f"item/app/{app_id}/filter/", 'POST',
                build_filter(PACKING_SPEC_FIELDS['customer'], [contact_id]),
                dedupe=not force_refresh,
            )
            items = response.get('items') if isinstance(response, dict) else None
            logger.info(f"Found {len(items or [])} packing specs for contact ID {contact_id}")
            return [build_packing_spec(item).to_dict() for item in items or []]

        specs = self._read_with_fallback(f"specs_{contact_id}", fetch)
        return [PackingSpec.from_dict(s) for s in specs]

    def get_packing_spec_details(self, spec_id: int) -> Optional[PackingSpec]:
        def fetch():
            try:
                item = self.call(f"item/{spec_id}")
            except ApiError as e:
                if e.status_code == 404:
                    return None
                raise
            if not item:
                return None
            return build_packing_spec(item, self.get_comments(spec_id)).to_dict()

        data = self._read_with_fallback(f"spec_{spec_id}", fetch)
        return PackingSpec.from_dict(data) if data else None

    def update_packing_spec_status(self, spec_id: int, status: Union[SpecStatus, str],
                                   comment: Optional[str] = None, approved_by: Optional[str] = None,
                                   signature: Union[bytes, str, None] = None) -> bool:
        """Record the customer's decision on a spec. Errors propagate to the caller."""
        status = map_status(status)
        logger.info(f"Updating packing spec {spec_id} to {status.value}")

        signature_file_id = None
        if status == SpecStatus.APPROVED_BY_CUSTOMER and signature:
            filename = f"signature_{spec_id}_{int(self.token_manager.clock())}.jpg"
            try:
                signature_file_id = self.upload_file(signature, filename)
            except (PodioError, ValueError) as e:
                if not should_proceed_without_signature(e):
                    raise
                logger.warning(f"Proceeding with approval without signature: {e}")

        if comment:
            text = f"{CHANGES_REQUESTED_PREFIX} {comment}" if status == SpecStatus.CHANGES_REQUESTED else comment
            try:
                self.add_comment(spec_id, text)
            except PodioError as e:
                logger.error(f"Error adding comment, continuing with status update: {e}")

        payload = build_update_payload(status, comment, approved_by, signature_file_id)
        self.call(f"item/{spec_id}", 'PUT', payload)
        self.cache.delete(f"spec_{spec_id}")
        return True

    # -- comments and files ------------------------------------------------

    def get_comments(self, item_id: int) -> List[Comment]:
        try:
            return build_comments(self.call(f"comment/item/{item_id}/"))
        except PodioError as e:
            logger.error(f"Error fetching comments for item {item_id}: {e}")
            return []

    def add_comment(self, item_id: int, text: str) -> bool:
        self.call(f"comment/item/{item_id}/", 'POST', {'value': text})
        return True

    def add_comment_to_packing_spec(self, spec_id: int, text: str, display_name: str) -> bool:
        return self.add_comment(spec_id, f"{display_name}: {text}")

    def upload_file(self, data: Union[bytes, str], filename: str) -> Optional[int]:
        """Upload raw bytes or a data: URL, returning Podio's file_id"""
        content, mimetype = _decode_file(data)
        response = self.call(
            'file/', 'POST',
            body={'filename': filename},
            files={'source': (filename, content, mimetype)},
        )
        return response.get('file_id') if isinstance(response, dict) else None
