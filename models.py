"""Records passed between the IMAP session, the normalizer, the cache and the search engine."""

import datetime
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from utils import EPOCH


def _iso(value):
    return value.isoformat() if isinstance(value, datetime.datetime) else value


@dataclass
class Address:
    name: str = ''
    mailbox: str = ''
    host: str = ''

    @property
    def address(self) -> str:
        """Single mailbox address string, e.g. "alice@example.com"."""
        if self.mailbox and self.host:
            return f"{self.mailbox}@{self.host}"
        return self.mailbox or self.host

    @classmethod
    def from_string(cls, name: str, addr: str) -> 'Address':
        mailbox, _, host = addr.rpartition('@') if '@' in addr else (addr, '', '')
        return cls(name=name, mailbox=mailbox, host=host)


@dataclass
class Envelope:
    subject: str = ''
    date: Optional[datetime.datetime] = None
    message_id: str = ''
    from_: List[Address] = field(default_factory=list)
    to: List[Address] = field(default_factory=list)
    cc: List[Address] = field(default_factory=list)
    bcc: List[Address] = field(default_factory=list)


@dataclass
class RawMessage:
    """
    A message as fetched from the server, before normalization.

    `sections` maps a content section label to its bytes. The unlabeled
    default section (RFC822) is keyed by None, the explicit empty section
    address (BODY[]) by "", anything else by its label (e.g. "TEXT", "1").
    """
    uid: int
    envelope: Envelope = field(default_factory=Envelope)
    flags: List[str] = field(default_factory=list)
    sections: Dict[Optional[str], bytes] = field(default_factory=dict)
    seq: Optional[int] = None
    internal_date: Optional[datetime.datetime] = None


@dataclass
class Email:
    uid: int
    message_id: str = ''
    subject: str = ''
    sender_name: str = ''
    sender_email: str = ''
    recipients: List[str] = field(default_factory=list)
    date: datetime.datetime = EPOCH
    body_text: str = ''
    body_html: str = ''
    headers: Dict[str, str] = field(default_factory=dict)
    flags: List[str] = field(default_factory=list)
    # Attached by the cache, not by the normalizer
    id: Optional[int] = None
    account_id: Optional[int] = None
    account_name: str = ''
    folder_id: Optional[int] = None
    folder_path: str = ''
    cached_at: Optional[datetime.datetime] = None

    @property
    def has_body(self) -> bool:
        return bool(self.body_text or self.body_html)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['date'] = _iso(self.date)
        data['cached_at'] = _iso(self.cached_at)
        return data


@dataclass
class EmailSummary:
    id: int
    account_name: str
    folder_path: str
    subject: str
    sender_name: str
    sender_email: str
    date: Optional[datetime.datetime]
    snippet: str = ''

    def to_dict(self) -> dict:
        data = asdict(self)
        data['date'] = _iso(self.date)
        return data


@dataclass
class Folder:
    name: str
    path: str
    id: Optional[int] = None
    account_id: Optional[int] = None
    account_name: str = ''
    message_count: int = 0
    last_synced: Optional[datetime.datetime] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data['last_synced'] = _iso(self.last_synced)
        return data


@dataclass
class SearchOptions:
    """Sparse, conjunctive search filters. None (or blank text) means no constraint."""
    account: Optional[str] = None
    folder: Optional[str] = None
    sender: Optional[str] = None
    recipient: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    date_from: Optional[datetime.datetime] = None
    date_to: Optional[datetime.datetime] = None
    limit: Optional[int] = None


@dataclass
class SyncResult:
    account: str
    folders_synced: List[str] = field(default_factory=list)
    folders_failed: Dict[str, str] = field(default_factory=dict)
    messages_fetched: int = 0
    messages_cached: int = 0
    messages_failed: int = 0

    @property
    def status(self) -> str:
        if self.folders_failed or self.messages_failed:
            return 'COMPLETED_WITH_ERRORS' if self.folders_synced else 'ERROR'
        return 'COMPLETED'

    def to_dict(self) -> dict:
        data = asdict(self)
        data['status'] = self.status
        return data
