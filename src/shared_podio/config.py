"""
Configuration settings for shared Podio client
"""
import os
import logging
from typing import Dict, Optional
from dotenv import load_dotenv

from .exceptions import NotConfiguredError

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.podio.com"
DEFAULT_TOKEN_URL = "https://podio.com/oauth/token"
DEFAULT_AUTHORIZE_URL = "https://podio.com/oauth/authorize"

GRANT_CLIENT_CREDENTIALS = "client_credentials"
GRANT_APP = "app"


def _key(name: str, suffix: str) -> str:
    """Build an environment variable name, optionally suffixed (PODIO_CLIENT_ID_2)"""
    return f"{name}_{suffix}" if suffix else name


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric app id: {value!r}")
        return None


class Config:
    """Podio Configuration"""

    def __init__(self, suffix: str = ""):
        self.suffix = suffix

        # Required Podio API client credentials
        self.podio_client_id = os.getenv(_key('PODIO_CLIENT_ID', suffix))
        self.podio_client_secret = os.getenv(_key('PODIO_CLIENT_SECRET', suffix))

        # The two Podio apps the portal works against
        self.podio_contacts_app_id = _int_or_none(os.getenv(_key('PODIO_CONTACTS_APP_ID', suffix)))
        self.podio_packing_spec_app_id = _int_or_none(os.getenv(_key('PODIO_PACKING_SPEC_APP_ID', suffix)))

        # App token is only needed for the "app" grant
        self.podio_app_token = os.getenv(_key('PODIO_APP_TOKEN', suffix), '')
        self.podio_grant_type = os.getenv(_key('PODIO_GRANT_TYPE', suffix), GRANT_CLIENT_CREDENTIALS)

        # Podio expects "OAuth2 <token>"; "Bearer" is accepted as an override
        self.podio_auth_scheme = os.getenv(_key('PODIO_AUTH_SCHEME', suffix), 'OAuth2')

        # API Endpoints
        self.podio_api_url = os.getenv(_key('PODIO_API_URL', suffix), DEFAULT_API_URL).rstrip('/')
        self.podio_token_url = os.getenv(_key('PODIO_TOKEN_URL', suffix), DEFAULT_TOKEN_URL)
        self.podio_authorize_url = os.getenv(_key('PODIO_AUTHORIZE_URL', suffix), DEFAULT_AUTHORIZE_URL)
        self.podio_redirect_uri = os.getenv(_key('PODIO_REDIRECT_URI', suffix), '')

        self.request_timeout = float(os.getenv(_key('PODIO_REQUEST_TIMEOUT', suffix), '30'))

    @property
    def is_configured(self) -> bool:
        return bool(self.podio_client_id and self.podio_client_secret)

    def validate(self):
        """Validate required configuration"""
        if not self.podio_client_id:
            raise NotConfiguredError(f"{_key('PODIO_CLIENT_ID', self.suffix)} not set")
        if not self.podio_client_secret:
            raise NotConfiguredError(f"{_key('PODIO_CLIENT_SECRET', self.suffix)} not set")
        if self.podio_grant_type not in (GRANT_CLIENT_CREDENTIALS, GRANT_APP):
            raise NotConfiguredError(f"Unsupported grant type: {self.podio_grant_type}")
        if self.podio_grant_type == GRANT_APP and not self.podio_app_token:
            raise NotConfiguredError(f"{_key('PODIO_APP_TOKEN', self.suffix)} is required for the app grant")

    def require_app_id(self, name: str) -> int:
        """Return the app id stored on ``name`` or raise if it was never configured"""
        value = getattr(self, name, None)
        if not value:
            raise NotConfiguredError(f"{name} is not configured")
        return value


# Global configuration instances, one per suffix
_config: Dict[str, Config] = {}


def get_config(suffix: str = "") -> Config:
    """Get the global configuration instance"""
    if suffix not in _config:
        _config[suffix] = Config(suffix)
    return _config[suffix]
