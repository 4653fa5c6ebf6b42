"""
Turns a fetched RawMessage into a canonical Email record.

Servers disagree about where the full message content is keyed in a FETCH
response, so the content bytes are located by trying a fixed sequence of
strategies and taking the first one that yields something. Normalization
never raises: a message whose body cannot be decoded is still cached with
its envelope metadata and empty (or lossy) bodies.
"""

import email
from email import policy
from email.message import Message
from typing import Callable, Dict, NamedTuple, Optional, Tuple

import html2text

from models import Email, RawMessage
from utils import EPOCH, debug_print, decode_field, log_print


class ContentLocator(NamedTuple):
    name: str
    locate: Callable[[Dict[Optional[str], bytes]], Optional[bytes]]


def _default_section(sections):
    return sections.get(None) or None


def _empty_section(sections):
    return sections.get('') or None


def _first_non_empty_section(sections):
    for content in sections.values():
        if content:
            return content
    return None


CONTENT_LOCATORS = (
    ContentLocator('default_section', _default_section),
    ContentLocator('empty_section', _empty_section),
    ContentLocator('first_non_empty_section', _first_non_empty_section),
)


def locate_content(sections) -> Optional[bytes]:
    """Returns the content bytes found by the first locator that finds any, or None."""
    if not sections:
        return None
    for locator in CONTENT_LOCATORS:
        content = locator.locate(sections)
        if content:
            debug_print(f"  - Content located via {locator.name}")
            return content
    return None


def _decode_payload(part: Message) -> str:
    """Decodes the payload of an email part."""
    payload = part.get_payload(decode=True)
    if payload is None:
        return ''
    charset = part.get_content_charset() or 'utf-8'
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        # Unknown charset label
        return payload.decode('latin-1', errors='replace')


def _is_attachment(part: Message) -> bool:
    return 'attachment' in str(part.get('Content-Disposition', '')).lower()


def _extract_bodies(msg: Message) -> Tuple[str, str]:
    text_body = ''
    html_body = ''
    for part in msg.walk():
        if part.is_multipart() or _is_attachment(part):
            continue
        content_type = part.get_content_type()
        if content_type == 'text/plain' and not text_body:
            text_body = _decode_payload(part)
        elif content_type == 'text/html' and not html_body:
            html_body = _decode_payload(part)
    return text_body, html_body


def html_to_text(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.ignore_images = True
    converter.body_width = 0
    return converter.handle(html).strip()


def _header_map(msg: Message) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    seen = set()
    # Header names are case-insensitive; the first spelling seen wins
    for key in msg.keys():
        if key.lower() in seen:
            continue
        seen.add(key.lower())
        values = [decode_field(value) for value in msg.get_all(key, [])]
        headers[key] = ', '.join(values)
    return headers


def decode_content(raw: bytes) -> Tuple[str, str, Dict[str, str]]:
    """
    Decodes raw RFC 822 bytes into (text body, html body, header map).

    When only an HTML part exists the text body is derived from it. If MIME
    decoding fails the raw bytes are returned verbatim as the text body.
    """
    try:
        msg = email.message_from_bytes(raw, policy=policy.compat32)
        text_body, html_body = _extract_bodies(msg)
        if html_body and not text_body:
            text_body = html_to_text(html_body)
        return text_body, html_body, _header_map(msg)
    except Exception as e:
        log_print(f"MIME decoding failed, keeping raw content as text: {e}")
        return raw.decode('utf-8', errors='replace'), '', {}


def normalize_message(raw: RawMessage) -> Email:
    envelope = raw.envelope
    sender = envelope.from_[0] if envelope.from_ else None
    recipients = [address.address for address in envelope.to + envelope.cc + envelope.bcc if address.address]

    text_body, html_body, headers = '', '', {}
    content = locate_content(raw.sections)
    if content is None:
        debug_print(f"  - No content section for UID {raw.uid}; caching metadata only")
    else:
        text_body, html_body, headers = decode_content(content)

    return Email(
        uid=raw.uid,
        message_id=envelope.message_id or headers.get('Message-ID', '').strip(),
        subject=envelope.subject,
        sender_name=sender.name if sender else '',
        sender_email=sender.address if sender else '',
        recipients=recipients,
        date=envelope.date or raw.internal_date or EPOCH,
        body_text=text_body,
        body_html=html_body,
        headers=headers,
        flags=list(raw.flags),
    )
