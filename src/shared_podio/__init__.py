"""
Shared Podio Client Package
"""
from .client import PodioClient
from .auth import TokenManager, ensure_valid_token, get_token_manager
from .models import Contact, PackingSpec, Comment, SpecStatus
from .config import Config, get_config
from .fields import extract_value, map_status
from .exceptions import (
    PodioError,
    NotConfiguredError,
    NotAuthenticatedError,
    InvalidCredentialsError,
    RateLimitedError,
    ApiError,
    MalformedResponseError,
    NetworkError,
    RequestInProgressError,
)

__all__ = [
    'PodioClient', 'TokenManager', 'ensure_valid_token', 'get_token_manager',
    'Contact', 'PackingSpec', 'Comment', 'SpecStatus', 'Config', 'get_config',
    'extract_value', 'map_status',
    'PodioError', 'NotConfiguredError', 'NotAuthenticatedError', 'InvalidCredentialsError',
    'RateLimitedError', 'ApiError', 'MalformedResponseError', 'NetworkError', 'RequestInProgressError',
]
