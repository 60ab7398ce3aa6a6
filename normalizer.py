"""
normalizer.py — Turn an arbitrary form-webhook payload into a TripRequest.

Accepted payload shapes
-----------------------
  1. Flat indexed keys:   {'fields[0][name]': 'city', 'fields[0][value]': 'Paris', ...}
  2. List of fields:      {'fields': [{'name': 'city', 'value': 'Paris'}, ...]}
  3. Dict of fields:      {'fields': {'0': {'name': 'city', 'value': 'Paris'}, ...}}
  4. Direct mapping:      {'city': 'Paris', 'email': 'a@b.com', ...}

Field names vary between forms, so each canonical field has an ordered alias
list (FIELD_ALIASES).  extract_field() tries the aliases exactly first, then
case-insensitively.  The alias table is data only; adding an alias needs no
code change.
"""

import json
import logging
import re
import urllib.parse

from schemas import TripRequest

logger = logging.getLogger(__name__)

# Form-builder bookkeeping keys that never carry user input
IGNORED_KEYS = frozenset({'pageid', 'formid', 'pageurl', 'formname', 't', 'referer', 'tranid'})

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    'destination': (
        'city', 'City', 'Город', 'город', 'CITY', 'destination',
        'destination_city', 'destinationCity', 'town',
    ),
    'recipient_email': (
        'email', 'Email', 'E-mail', 'e-mail', 'EMAIL', 'email_address', 'emailAddress',
    ),
    'start_date': (
        'startDate', 'start-date', 'start_date', 'StartDate', 'дата_начала', 'start', 'arrival',
    ),
    'end_date': (
        'endDate', 'end-date', 'end_date', 'EndDate', 'дата_окончания', 'end', 'departure',
    ),
    'budget': (
        'budget', 'Budget', 'бюджет', 'BUDGET', 'total_budget', 'totalBudget',
    ),
    'interests': (
        'interests', 'Интересы', 'INTERESTS', 'preferences', 'interests_text',
    ),
    'people_count': (
        'people', 'Persons', 'Количество', 'количество', 'person', 'PEOPLE',
        'travelers', 'guests', 'persons',
    ),
    'recipient_name': ('name', 'Name', 'имя', 'full_name', 'fullName'),
    'phone':          ('phone', 'Phone', 'телефон', 'phone_number', 'phoneNumber'),
    'notes':          ('notes', 'Notes', 'комментарий', 'comment', 'message'),
}

# Keep in sync with the max_length caps on TripRequest
MAX_FIELD_LENGTHS = {
    'destination':     100,
    'budget':          500,
    'interests':       1000,
    'recipient_email': 254,
    'recipient_name':  200,
    'phone':           50,
    'notes':           2000,
}

_FLAT_FIELD_RE = re.compile(r'^fields\[(\d+)\]\[(name|value)\]$')
_EMAIL_RE      = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


# ── Payload shapes ────────────────────────────────────────────────────────────

def _collect_pairs(pairs) -> dict[str, str]:
    result = {}
    for field in pairs:
        if not isinstance(field, dict):
            continue
        name, value = field.get('name'), field.get('value')
        if name and value is not None:
            result[str(name)] = str(value).strip()
    return result


def parse_form_payload(body) -> dict[str, str]:
    """Flatten any supported payload shape into {field_name: stripped string}."""
    if not isinstance(body, dict) or not body:
        logger.warning('Form payload is empty or not a mapping (%s)', type(body).__name__)
        return {}

    flat_keys = [k for k in body if isinstance(k, str) and k.startswith('fields[')]
    if flat_keys:
        grouped: dict[str, dict] = {}
        for key in flat_keys:
            m = _FLAT_FIELD_RE.match(key)
            if m:
                grouped.setdefault(m.group(1), {})[m.group(2)] = body[key]
        result = _collect_pairs(grouped[i] for i in sorted(grouped, key=int))
        logger.debug('Form payload: flat indexed shape, %d field(s)', len(result))
        return result

    fields = body.get('fields')
    if isinstance(fields, list):
        result = _collect_pairs(fields)
        logger.debug('Form payload: fields list shape, %d field(s)', len(result))
        return result
    if isinstance(fields, dict):
        result = _collect_pairs(fields.values())
        logger.debug('Form payload: fields mapping shape, %d field(s)', len(result))
        return result

    result = {
        str(k): str(v).strip()
        for k, v in body.items()
        if k not in IGNORED_KEYS and v is not None and not isinstance(v, (dict, list))
    }
    logger.debug('Form payload: direct shape, %d field(s)', len(result))
    return result


# ── Alias lookup ──────────────────────────────────────────────────────────────

def extract_field(data: dict, aliases) -> str | None:
    """Return the first non-blank value among aliases (exact, then case-insensitive)."""
    if not isinstance(data, dict):
        return None

    for name in aliases:
        value = data.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()

    lowered = {a.lower() for a in aliases}
    for key, value in data.items():
        if str(key).lower() in lowered and value is not None and str(value).strip():
            return str(value).strip()
    return None


def normalize_payload(body) -> TripRequest:
    """Payload of any supported shape → canonical TripRequest."""
    parsed = parse_form_payload(body)
    fields = {canonical: extract_field(parsed, aliases)
              for canonical, aliases in FIELD_ALIASES.items()}
    # Over-long values are clipped rather than rejected; the caller always gets an ack.
    for name, max_len in MAX_FIELD_LENGTHS.items():
        if fields.get(name) and len(fields[name]) > max_len:
            fields[name] = fields[name][:max_len]
    return TripRequest(**fields)


def missing_required(request: TripRequest) -> list[str]:
    """Names of required fields that are absent or unusable."""
    missing = []
    if not request.destination or len(request.destination) < 2:
        missing.append('destination')
    if not request.recipient_email or not _EMAIL_RE.match(request.recipient_email):
        missing.append('recipient_email')
    return missing


# ── Body decoding ─────────────────────────────────────────────────────────────

def decode_body(raw: bytes, content_type: str | None) -> dict:
    """
    Decode a webhook body.  JSON and url-encoded forms are handled by content
    type; text/plain (and anything unrecognised) is tried as JSON, then as a
    url-encoded string.  Never raises — undecodable bodies become {}.
    """
    ctype = (content_type or '').split(';')[0].strip().lower()
    text = raw.decode('utf-8', errors='replace') if raw else ''
    if not text.strip():
        return {}

    if ctype != 'application/x-www-form-urlencoded':
        try:
            data = json.loads(text)
            return data if isinstance(data, dict) else {}
        except json.JSONDecodeError:
            if ctype == 'application/json':
                logger.warning('Body declared as JSON but could not be parsed')
                return {}

    return dict(urllib.parse.parse_qsl(text, keep_blank_values=True))
