import datetime
import re
import sys
from email.header import decode_header
from email.utils import parsedate_to_datetime

import config # Import the config module
from errors import InvalidInputError

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

def log_print(*args, **kwargs):
    # stdout carries tool responses when serving, so log lines go to stderr
    kwargs.setdefault('file', sys.stderr)
    print(*args, **kwargs)

def debug_print(*args, **kwargs):
    # Access DEBUG_MODE directly from the config module
    if config.DEBUG_MODE:
        log_print(*args, **kwargs)

# Parse an RFC 2822 date header into an aware datetime
def parse_email_date(date_str):
    if not date_str:
        return None

    try:
        parsed = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed

def to_utc_iso(value: datetime.datetime) -> str:
    """Canonical stored form: UTC, second precision, explicit offset. Sorts chronologically as text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).isoformat(timespec='seconds')

def from_db_timestamp(value):
    if not value:
        return None
    if isinstance(value, datetime.datetime):
        parsed = value
    else:
        parsed = datetime.datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed

def parse_iso_datetime(value, field_name='date'):
    """Parses a user-supplied ISO 8601 timestamp. Naive values are taken as UTC."""
    if isinstance(value, datetime.datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidInputError(
                f"invalid {field_name} format: {value!r} (expected ISO 8601, e.g. 2024-01-02T00:00:00Z)",
                {field_name: value},
            ) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed

# Decode MIME headers with better error handling
def decode_field(field):
    if not field:
        return ''
    try:
        parts = decode_header(str(field))
    except Exception:
        return str(field)
    decoded = ''
    for part, encoding in parts:
        if isinstance(part, bytes):
            try:
                # Handle unknown encodings gracefully
                if encoding and encoding.lower() == 'unknown-8bit':
                    decoded += part.decode('utf-8', errors='replace')
                else:
                    decoded += part.decode(encoding or 'utf-8', errors='replace')
            except (LookupError, UnicodeDecodeError):
                # Fallback to utf-8 with error replacement
                decoded += part.decode('utf-8', errors='replace')
        else:
            decoded += part
    return decoded

_MESSAGE_START_RE = re.compile(rb'^(\d+) \(')
_LITERAL_LABEL_RE = re.compile(rb'(RFC822|BODY\[([^\]]*)\])(?:<\d+>)?\s*\{\d+\}$')
_UID_RE = re.compile(rb'UID (\d+)')
_FLAGS_RE = re.compile(rb'FLAGS \(([^)]*)\)')
_INTERNALDATE_RE = re.compile(rb'INTERNALDATE "([^"]+)"')

def _literal_label(prefix: bytes):
    """Maps the text before a literal to a section label. RFC822 is the unlabeled section (None)."""
    match = _LITERAL_LABEL_RE.search(prefix.rstrip())
    if not match:
        return None, False
    if match.group(1) == b'RFC822':
        return None, True
    return match.group(2).decode('ascii', errors='replace'), True

def parse_internal_date(value):
    if not value:
        return None
    try:
        return datetime.datetime.strptime(value.strip(), '%d-%b-%Y %H:%M:%S %z')
    except ValueError:
        debug_print(f"  - Unparseable INTERNALDATE: {value}")
        return None

# Parse IMAP FETCH response into per-message dicts
def parse_fetch_response(data):
    """
    Groups an imaplib FETCH response into one dict per message.

    imaplib returns a flat list mixing (metadata, literal) tuples and bare
    metadata bytes; a tuple whose metadata starts with "<seq> (" opens a new
    message. Each dict carries seq, uid, flags, internal_date and literals,
    a map of section label to literal bytes.
    """
    debug_print(f"Response data has {len(data) if data else 0} elements")

    messages = []
    current = None
    metadata = b''

    def finish():
        if current is None:
            return
        uid_match = _UID_RE.search(metadata)
        flags_match = _FLAGS_RE.search(metadata)
        date_match = _INTERNALDATE_RE.search(metadata)
        current['uid'] = int(uid_match.group(1)) if uid_match else None
        current['flags'] = flags_match.group(1).decode('utf-8', errors='replace').split() if flags_match else []
        current['internal_date'] = parse_internal_date(date_match.group(1).decode('ascii', errors='replace')) if date_match else None
        messages.append(current)

    for item in data or []:
        if item is None:
            continue
        if isinstance(item, tuple):
            prefix = item[0] if isinstance(item[0], bytes) else str(item[0]).encode()
            literal = item[1] if len(item) > 1 else b''
        else:
            prefix = item if isinstance(item, bytes) else str(item).encode()
            literal = None

        start = _MESSAGE_START_RE.match(prefix)
        if start:
            finish()
            current = {'seq': int(start.group(1)), 'literals': {}}
            metadata = b''
        if current is None:
            continue

        metadata += b' ' + prefix
        if literal is not None:
            label, found = _literal_label(prefix)
            if found:
                current['literals'][label] = literal if isinstance(literal, bytes) else str(literal).encode()

    finish()
    debug_print(f"Extracted {len(messages)} messages")
    return messages
