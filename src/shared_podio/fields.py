"""
Podio field mapping

Translates Podio's generic "item with typed fields" JSON into portal records
(Contact, PackingSpec, Comment) and builds the field-update body for writes.
Everything here is pure: no network, no storage.

Usage:
    from shared_podio.fields import extract_value, map_status

    status = map_status(extract_value(item['fields'], 'customer-approval-status'))
"""
import re
import html
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import bleach

from .models import (
    AppReference,
    Comment,
    Contact,
    FieldType,
    FileRef,
    PackingSpec,
    RawField,
    SpecStatus,
)

logger = logging.getLogger(__name__)

FieldKey = Union[str, int]

# Contacts app external ids
CONTACT_FIELDS = {
    'name': 'title',
    'email': 'email',
    'username': 'customer-portal-username',
    'password': 'customer-portal-password',
    'logo_url': 'logo-url',
}

# Packing spec app external ids. Some carry the typos they were created with
# in Podio and must stay that way.
PACKING_SPEC_FIELDS = {
    'product': 'product-name',
    'customer': 'customer',
    'product_code': 'product-code',
    'version_number': 'version-number',
    'updated_by': 'updated-by',
    'date_reviewed': 'date-reviewed',
    'umf_mgo': 'umf-mgo',
    'honey_type': 'honey-type',
    'allergen_type': 'allergen-type',
    'ingredient_type': 'ingredient-type',
    'customer_requirements': 'customer-requrements',
    'country_of_eligibility': 'country-of-eligibility',
    'other_markets': 'other-markets',
    'testing_requirements': 'testing-requirments',
    'regulatory_requirements': 'reglatory-requirements',
    'jar_colour': 'jar-colour',
    'jar_material': 'jar-material',
    'jar_shape': 'jar-shape',
    'jar_size': 'jar-size',
    'lid_size': 'lid-size',
    'lid_colour': 'lid-colour',
    'on_the_go_packaging': 'on-the-go-packaging',
    'pouch_size': 'pouch-size',
    'seal_instructions': 'seal-instructions',
    'shipper_size': 'shipper-size',
    'customised_carton_type': 'customised-carton-type',
    'label_code': 'label-code',
    'label_specification': 'label-soecification',
    'label_link': 'label-link',
    'printing_info_located': 'printing-information-located',
    'printing_colour': 'printing-colour',
    'printing_info_required': 'printing-information-required',
    'required_best_before_date': 'required-best-before-date',
    'date_formatting': 'formate-of-dates',
    'shipper_sticker_count': 'number-of-shipper-stickers-on-carton',
    'pallet_type': 'pallet-type',
    'cartons_per_layer': 'cartons-per-layer',
    'number_of_layers': 'number-of-layers',
    'pallet_specs': 'pallet',
    'pallet_documents': 'pallet-documents',
    'customer_requested_changes': 'customer-requested-changes',
    'approved_by_name': 'approved-by-2',
    'approval_date': 'approval-date',
    'email_for_approval': 'email-for-approval',
}

APPROVAL_STATUS_FIELD = 'approval-status'
CUSTOMER_APPROVAL_STATUS_FIELD = 'customer-approval-status'
APPROVED_BY_FIELD = 'approved-by-2'
APPROVAL_DATE_FIELD = 'approval-date'
REQUESTED_CHANGES_FIELD = 'customer-requested-changes'
SIGNATURE_FIELD = 'signature'
LABEL_FIELD = 'label'
SHIPPER_STICKER_FIELD = 'shipper-sticker'

DATE_DETAILS = ('date_reviewed', 'approval_date')

# Category option ids as configured in the packing spec app
APPROVAL_STATUS_OPTIONS = {
    SpecStatus.PENDING_APPROVAL: 1,
    SpecStatus.CHANGES_REQUESTED: 2,
    SpecStatus.APPROVED_BY_CUSTOMER: 3,
}
CUSTOMER_APPROVAL_OPTIONS = {
    SpecStatus.APPROVED_BY_CUSTOMER: 1,  # "approve-specification"
    SpecStatus.CHANGES_REQUESTED: 3,  # "request-changes"
}

# Labels have drifted between Podio deployments, so match on synonyms
STATUS_SYNONYMS = {
    'approved by customer': SpecStatus.APPROVED_BY_CUSTOMER,
    'approve specification': SpecStatus.APPROVED_BY_CUSTOMER,
    'approved': SpecStatus.APPROVED_BY_CUSTOMER,
    'changes requested': SpecStatus.CHANGES_REQUESTED,
    'request changes': SpecStatus.CHANGES_REQUESTED,
    'pending approval': SpecStatus.PENDING_APPROVAL,
    'pending customer approval': SpecStatus.PENDING_APPROVAL,
}


def _find_field(fields: Iterable[Any], key: FieldKey) -> Optional[RawField]:
    for raw in fields or []:
        if isinstance(raw, RawField):
            candidate = raw
        elif isinstance(raw, dict):
            candidate = RawField.from_dict(raw)
        else:
            continue
        if isinstance(key, int) and not isinstance(key, bool):
            if candidate.field_id == key:
                return candidate
        elif candidate.external_id == key:
            return candidate
    return None


def _unwrap(value: Any) -> Any:
    if isinstance(value, dict) and 'value' in value:
        return value['value']
    return value


def _scalar(f: RawField) -> Any:
    value = _unwrap(f.values[0])
    # email/phone/embed sometimes nest one more level
    if isinstance(value, dict):
        return value.get('value', value.get('url'))
    return value


def _calculation(f: RawField) -> Optional[str]:
    value = _unwrap(f.values[0])
    return None if value is None else str(value)


def _category(f: RawField) -> Any:
    texts = []
    for entry in f.values:
        option = _unwrap(entry)
        if isinstance(option, dict) and option.get('text') is not None:
            texts.append(option['text'])
        elif isinstance(option, str):
            texts.append(option)
    if not texts:
        return None
    return texts if f.multiple else texts[0]


def _app(f: RawField) -> List[AppReference]:
    refs = []
    for entry in f.values:
        target = entry.get('value') or entry.get('item') if isinstance(entry, dict) else None
        if isinstance(target, dict) and target.get('item_id') is not None:
            refs.append(AppReference(item_id=target['item_id'], title=target.get('title') or ''))
    return refs


def _date(f: RawField) -> Optional[str]:
    first = f.values[0]
    if not isinstance(first, dict):
        return first if isinstance(first, str) else None
    if first.get('start'):
        return first['start']
    inner = first.get('value')
    if isinstance(inner, str):
        return inner
    if isinstance(inner, dict):
        return inner.get('start')
    return None


def _file_ref(entry: Any) -> Optional[FileRef]:
    if not isinstance(entry, dict):
        return None
    data = entry.get('file') or entry.get('value') or entry
    if not isinstance(data, dict):
        return None
    return FileRef(
        file_id=data.get('file_id'),
        link=data.get('link'),
        name=data.get('name'),
        mimetype=data.get('mimetype'),
    )


def _files(f: RawField) -> Any:
    refs = [ref for ref in (_file_ref(entry) for entry in f.values) if ref is not None]
    if not refs:
        return None
    return refs if f.multiple else refs[0]


def _embed(f: RawField) -> Optional[str]:
    first = f.values[0]
    if isinstance(first, dict) and isinstance(first.get('embed'), dict):
        return first['embed'].get('url')
    return _scalar(f)


_EXTRACTORS: Dict[FieldType, Callable[[RawField], Any]] = {
    FieldType.TEXT: _scalar,
    FieldType.NUMBER: _scalar,
    FieldType.EMAIL: _scalar,
    FieldType.PHONE: _scalar,
    FieldType.MONEY: _scalar,
    FieldType.DURATION: _scalar,
    FieldType.LOCATION: _scalar,
    FieldType.EMBED: _embed,
    FieldType.CALCULATION: _calculation,
    FieldType.CATEGORY: _category,
    FieldType.APP: _app,
    FieldType.DATE: _date,
    FieldType.IMAGE: _files,
    FieldType.FILE: _files,
}


def extract_value(fields: Iterable[Any], key: FieldKey) -> Any:
    """
    Return the unwrapped value of the field identified by external id (str)
    or field id (int), or None when the field is absent, empty, or of a type
    the adapter does not model.
    """
    f = _find_field(fields, key)
    if f is None or not f.values or f.type is None:
        return None
    try:
        return _EXTRACTORS[f.type](f)
    except (AttributeError, IndexError, KeyError, TypeError) as e:
        logger.debug(f"Unexpected shape for field {key!r} ({f.type.value}): {e}")
        return None


def extract_text(fields: Iterable[Any], key: FieldKey) -> str:
    """Field value flattened to a display string ('' when absent)"""
    value = extract_value(fields, key)
    if value is None:
        return ''
    if isinstance(value, list):
        return ', '.join(filter(None, (_as_text(v) for v in value)))
    return _as_text(value)


def _as_text(value: Any) -> str:
    if isinstance(value, AppReference):
        return value.title
    if isinstance(value, FileRef):
        return value.link or value.name or ''
    return str(value)


def get_reference_id(fields: Iterable[Any], key: FieldKey) -> Optional[int]:
    """Item id of the first record referenced by an app field"""
    f = _find_field(fields, key)
    if f is None or f.type != FieldType.APP:
        return None
    refs = extract_value([f], key)
    return refs[0].item_id if refs else None


def _normalize_status(raw: str) -> str:
    return ' '.join(re.sub(r'[-_]+', ' ', raw.lower()).split())


def map_status(raw: Any) -> SpecStatus:
    """Map a Podio status label onto the portal's three states; unknown means pending"""
    if isinstance(raw, SpecStatus):
        return raw
    if isinstance(raw, list):
        raw = raw[0] if raw else None
    if not raw or not isinstance(raw, str):
        return SpecStatus.PENDING_APPROVAL
    status = STATUS_SYNONYMS.get(_normalize_status(raw))
    if status is None:
        logger.info(f"Unrecognized Podio status {raw!r}, defaulting to pending-approval")
        return SpecStatus.PENDING_APPROVAL
    return status


def strip_html(text: Optional[str]) -> str:
    """Reduce Podio rich text to plain text"""
    if not text:
        return ''
    text = re.sub(r'(?i)<br\s*/?>|</p>', '\n', text)
    cleaned = bleach.clean(text, tags=set(), strip=True)
    return html.unescape(cleaned).strip()


def build_contact(item: Dict[str, Any]) -> Optional[Contact]:
    if not item or not isinstance(item.get('fields'), list):
        logger.error(f"Invalid item structure for contact: {item!r:.200}")
        return None
    fields = item['fields']
    logo = extract_value(fields, CONTACT_FIELDS['logo_url'])
    if isinstance(logo, list):
        logo = logo[0] if logo else None
    if isinstance(logo, FileRef):
        logo = logo.link
    return Contact(
        id=item['item_id'],
        name=extract_text(fields, CONTACT_FIELDS['name']) or item.get('title') or 'Unknown Contact',
        email=extract_text(fields, CONTACT_FIELDS['email']),
        username=extract_text(fields, CONTACT_FIELDS['username']),
        logo_url=logo or None,
    )


def build_comment(raw: Dict[str, Any]) -> Comment:
    rich = raw.get('rich_value')
    text = strip_html(rich) if rich else (raw.get('value') or '')
    author = raw.get('created_by') or {}
    return Comment(
        id=raw.get('comment_id'),
        text=text,
        created_by=author.get('name') or 'Unknown User',
        created_at=raw.get('created_on'),
    )


def build_comments(raw_comments: Any) -> List[Comment]:
    if not isinstance(raw_comments, list):
        return []
    return [build_comment(c) for c in raw_comments if isinstance(c, dict)]


def _images(fields: Iterable[Any], key: str) -> List[FileRef]:
    value = extract_value(fields, key)
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def build_packing_spec(item: Dict[str, Any], comments: Optional[List[Comment]] = None) -> PackingSpec:
    fields = item.get('fields') or []

    details: Dict[str, Any] = {}
    for name, external_id in PACKING_SPEC_FIELDS.items():
        if name == 'customer':
            continue
        if name in DATE_DETAILS:
            details[name] = extract_value(fields, external_id)
        else:
            details[name] = extract_text(fields, external_id)

    title = details['product'] or item.get('title') or 'Untitled Spec'
    return PackingSpec(
        id=item['item_id'],
        title=title,
        description=details['customer_requirements'],
        status=map_status(extract_value(fields, CUSTOMER_APPROVAL_STATUS_FIELD)),
        created_at=item.get('created_on'),
        details=details,
        customer_id=get_reference_id(fields, PACKING_SPEC_FIELDS['customer']),
        images={
            'label': _images(fields, LABEL_FIELD),
            'shipper_sticker': _images(fields, SHIPPER_STICKER_FIELD),
        },
        comments=list(comments or []),
    )


def build_update_payload(
    status: Union[SpecStatus, str],
    comment: Optional[str] = None,
    approved_by: Optional[str] = None,
    signature_file_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Minimal field-update body for PUT /item/{item_id}"""
    status = map_status(status)
    fields: Dict[str, Any] = {
        APPROVAL_STATUS_FIELD: [{'value': APPROVAL_STATUS_OPTIONS[status]}],
    }
    if status in CUSTOMER_APPROVAL_OPTIONS:
        fields[CUSTOMER_APPROVAL_STATUS_FIELD] = [{'value': CUSTOMER_APPROVAL_OPTIONS[status]}]

    if status == SpecStatus.APPROVED_BY_CUSTOMER:
        if approved_by:
            fields[APPROVED_BY_FIELD] = approved_by
        stamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        fields[APPROVAL_DATE_FIELD] = {'start_utc': stamp.strftime('%Y-%m-%d %H:%M:%S')}
        if signature_file_id:
            fields[SIGNATURE_FIELD] = [{'value': signature_file_id}]
    elif status == SpecStatus.CHANGES_REQUESTED and comment:
        fields[REQUESTED_CHANGES_FIELD] = comment

    return {'fields': fields}


def build_filter(field_key: FieldKey, value: Any, limit: int = 100) -> Dict[str, Any]:
    """Body for POST /item/app/{app_id}/filter/"""
    return {'filters': {str(field_key): value}, 'limit': limit}
