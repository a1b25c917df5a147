"""
Data models for Podio tokens, raw fields and portal domain records
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

TOKEN_SAFETY_MARGIN = 5 * 60  # seconds


@dataclass
class Token:
    """OAuth token as stored by the token manager"""
    access_token: str
    expires_at: float  # epoch seconds, already reduced by the refresh buffer
    refresh_token: Optional[str] = None

    def is_usable(self, now: float, margin: float = TOKEN_SAFETY_MARGIN) -> bool:
        return self.expires_at - now >= margin


@dataclass
class RateLimitState:
    """Backoff bookkeeping persisted between calls"""
    limited: bool = False
    limit_until: Optional[float] = None  # epoch seconds
    retry_count: int = 0
    endpoint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RateLimitState':
        return cls(
            limited=bool(data.get('limited', False)),
            limit_until=data.get('limit_until'),
            retry_count=int(data.get('retry_count', 0) or 0),
            endpoint=data.get('endpoint'),
        )


class SpecStatus(str, Enum):
    PENDING_APPROVAL = 'pending-approval'
    APPROVED_BY_CUSTOMER = 'approved-by-customer'
    CHANGES_REQUESTED = 'changes-requested'


class FieldType(str, Enum):
    """Podio field types the adapter knows how to unwrap"""
    TEXT = 'text'
    CATEGORY = 'category'
    APP = 'app'
    EMAIL = 'email'
    PHONE = 'phone'
    NUMBER = 'number'
    DATE = 'date'
    IMAGE = 'image'
    FILE = 'file'
    EMBED = 'embed'
    CALCULATION = 'calculation'
    MONEY = 'money'
    DURATION = 'duration'
    LOCATION = 'location'

    @classmethod
    def parse(cls, value: Any) -> Optional['FieldType']:
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass
class RawField:
    """A Podio item field: {external_id, field_id, type, values[]}"""
    external_id: Optional[str]
    field_id: Optional[int]
    type: Optional[FieldType]  # None for types the adapter does not model
    values: List[Any] = field(default_factory=list)
    multiple: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RawField':
        values = data.get('values')
        if not isinstance(values, list):
            values = []
        config = data.get('config') or {}
        settings = config.get('settings') or {}
        return cls(
            external_id=data.get('external_id'),
            field_id=data.get('field_id'),
            type=FieldType.parse(data.get('type')),
            values=values,
            multiple=bool(settings.get('multiple', False)) or len(values) > 1,
        )


@dataclass(frozen=True)
class Contact:
    """Customer identity from the Contacts app"""
    id: int
    name: str
    email: str
    username: str
    logo_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Contact':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            email=data.get('email', ''),
            username=data.get('username', ''),
            logo_url=data.get('logo_url'),
        )


@dataclass
class AppReference:
    """Reference from one Podio item to another"""
    item_id: int
    title: str = ''


@dataclass
class FileRef:
    """Image or file attachment on an item"""
    file_id: Optional[int]
    link: Optional[str] = None
    name: Optional[str] = None
    mimetype: Optional[str] = None


@dataclass
class Comment:
    id: int
    text: str
    created_by: str
    created_at: Optional[str]


@dataclass
class PackingSpec:
    """Packing specification as shown to the customer"""
    id: int
    title: str
    description: str
    status: SpecStatus
    created_at: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)
    customer_id: Optional[int] = None  # Contacts item the spec belongs to
    images: Dict[str, List[FileRef]] = field(default_factory=dict)  # label, shipper_sticker
    comments: List[Comment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PackingSpec':
        return cls(
            id=data['id'],
            title=data.get('title', ''),
            description=data.get('description', ''),
            status=SpecStatus(data.get('status', SpecStatus.PENDING_APPROVAL.value)),
            created_at=data.get('created_at'),
            details=dict(data.get('details') or {}),
            customer_id=data.get('customer_id'),
            images={
                name: [FileRef(**ref) for ref in refs]
                for name, refs in (data.get('images') or {}).items()
            },
            comments=[Comment(**c) for c in data.get('comments') or []],
        )
