import asyncio
import email
import imaplib
import os
import re
from email.utils import getaddresses

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

import config
from config import SCOPES, TOKEN_PATH, AUTH_XOAUTH2, AccountConfig
from errors import FolderNotFoundError, ImapCommandError, ImapConnectionError, ImapConnectionLostError
from models import Address, Envelope, RawMessage
from utils import debug_print, log_print, decode_field, parse_email_date, parse_fetch_response

ENVELOPE_FIELDS = 'FROM TO CC BCC SUBJECT DATE MESSAGE-ID'
FETCH_ITEMS = f'(UID FLAGS INTERNALDATE BODY.PEEK[HEADER.FIELDS ({ENVELOPE_FIELDS})] BODY.PEEK[])'

_LIST_RE = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.+)$', re.IGNORECASE)


class ImapClient:
    """
    One IMAP session for one account.

    The connection is opened lazily by the first operation and reused
    afterwards. When the socket dies mid-operation the session is dropped, so
    the next call reconnects instead of reusing a dead handle.
    """

    def __init__(self, account: AccountConfig, creds=None):
        self.account = account
        self.host = account.imap_host
        self.port = account.imap_port
        self.user = account.imap_username
        self.creds = creds
        self.imap = None
        self.current_mailbox = None

    @property
    def name(self) -> str:
        return self.account.name

    @property
    def is_connected(self) -> bool:
        return self.imap is not None

    async def connect(self):
        """Connect to the IMAP server"""
        log_print(f"Connecting to {self.host}:{self.port} as {self.user}...")
        loop = asyncio.get_running_loop()
        try:
            self.imap = await loop.run_in_executor(None, self._login)
        except ImapConnectionError:
            raise
        except imaplib.IMAP4.error as e:
            raise ImapConnectionError(f"IMAP login to {self.host} failed for account {self.name}: {e}",
                                      {"account": self.name, "host": self.host}) from e
        except OSError as e:
            raise ImapConnectionError(f"Could not reach IMAP server {self.host}:{self.port}: {e}",
                                      {"account": self.name, "host": self.host}) from e
        log_print("Connection established successfully")
        return self.imap

    async def ensure_connected(self):
        if self.imap is None:
            await self.connect()
        return self.imap

    def _login(self):
        """Open the socket and authenticate with LOGIN or XOAUTH2."""
        imap = imaplib.IMAP4_SSL(self.host, self.port)
        try:
            if self.account.auth_method == AUTH_XOAUTH2:
                if self.creds is None:
                    self.creds = get_credentials(self.account.client_secret_path)
                auth_string = f"user={self.user}\x01auth=Bearer {self.creds.token}\x01\x01"
                imap.authenticate('XOAUTH2', lambda x: auth_string.encode('utf-8'))
            else:
                imap.login(self.user, self.account.imap_password)
        except imaplib.IMAP4.error as e:
            try:
                imap.logout()
            except (imaplib.IMAP4.error, OSError):
                pass
            if "Invalid credentials" in str(e) or "AUTHENTICATIONFAILED" in str(e):
                log_print(f"Authentication failed for account {self.name}.")
            raise ImapConnectionError(f"IMAP authentication failed for account {self.name}: {e}",
                                      {"account": self.name, "host": self.host}) from e
        return imap

    def _drop_connection(self):
        if self.imap is not None:
            try:
                self.imap.shutdown()
            except (imaplib.IMAP4.error, OSError) as e:
                debug_print(f"Error shutting down dead session for {self.name}: {e}")
        self.imap = None
        self.current_mailbox = None

    async def _run(self, func):
        """Run a blocking imaplib call in the executor, dropping the session if the link dies."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func)
        except (imaplib.IMAP4.abort, OSError) as e:
            debug_print(f"IMAP connection for {self.name} lost: {e}")
            self._drop_connection()
            raise ImapConnectionLostError(f"IMAP connection to {self.host} lost: {e}",
                                          {"account": self.name, "host": self.host}) from e
        except imaplib.IMAP4.error as e:
            raise ImapCommandError(f"IMAP command rejected for account {self.name}: {e}",
                                   {"account": self.name}) from e

    def _quote_mailbox_if_needed(self, mailbox):
        """Add double quotes around mailbox names that contain spaces or slashes"""
        if not (mailbox.startswith('"') and mailbox.endswith('"')):
            if " " in mailbox or "/" in mailbox:
                return f'"{mailbox}"'
        return mailbox

    async def select_mailbox(self, mailbox, readonly=True) -> int:
        """Select a mailbox and return its message count"""
        await self.ensure_connected()
        quoted_mailbox = self._quote_mailbox_if_needed(mailbox)

        status, data = await self._run(lambda: self.imap.select(quoted_mailbox, readonly=readonly))
        if status != 'OK':
            debug_print(f"Failed to select mailbox {mailbox}: {status} {data}")
            raise FolderNotFoundError(self.name, mailbox)
        self.current_mailbox = mailbox
        try:
            return int(data[0])
        except (TypeError, ValueError, IndexError):
            return 0

    async def list_folders(self) -> list[dict]:
        """List all selectable mailboxes as {name, path} dicts"""
        await self.ensure_connected()
        status, mailboxes_data = await self._run(lambda: self.imap.list())
        if status != 'OK':
            raise ImapCommandError(f"LIST failed for account {self.name}: {status}", {"account": self.name})

        result = []
        for mailbox_entry in mailboxes_data or []:
            folder = parse_list_entry(mailbox_entry)
            if folder is None:
                continue
            if '\\noselect' in folder['flags'].lower():
                continue
            result.append({'name': folder['name'], 'path': folder['path']})
        return result

    async def get_folder_status(self, folder) -> dict:
        message_count = await self.select_mailbox(folder)
        return {'message_count': message_count}

    async def fetch_messages(self, folder, start=0, end=0) -> list[RawMessage]:
        """
        Fetch messages by sequence number. start=end=0 fetches the most recent
        window (config.RECENT_FETCH_WINDOW), or the whole folder if it is smaller.
        """
        message_count = await self.select_mailbox(folder)
        if message_count == 0:
            return []
        if start == 0 and end == 0:
            start = max(1, message_count - config.RECENT_FETCH_WINDOW + 1)
            end = message_count

        sequence_set = f"{start}:{end}"
        debug_print(f"Fetching {sequence_set} from {folder} for {self.name}")
        status, data = await self._run(lambda: self.imap.fetch(sequence_set, FETCH_ITEMS))
        if status != 'OK':
            raise ImapCommandError(f"FETCH {sequence_set} failed in {folder}: {status}",
                                   {"account": self.name, "folder": folder})
        return [build_raw_message(parsed) for parsed in parse_fetch_response(data)]

    async def fetch_message_by_uid(self, folder, uid) -> RawMessage | None:
        """Fetch the single message with the given UID, or None if the server has no such message"""
        await self.select_mailbox(folder)
        status, data = await self._run(lambda: self.imap.uid('FETCH', str(uid), FETCH_ITEMS))
        if status != 'OK':
            raise ImapCommandError(f"UID FETCH {uid} failed in {folder}: {status}",
                                   {"account": self.name, "folder": folder, "uid": uid})
        for parsed in parse_fetch_response(data):
            if parsed['uid'] is None or parsed['uid'] == int(uid):
                message = build_raw_message(parsed)
                message.uid = int(uid)
                return message
        return None

    async def close(self):
        """Close the IMAP connection"""
        if self.imap:
            log_print(f"Closing IMAP connection for {self.name}...")
            loop = asyncio.get_running_loop()
            try:
                if self.current_mailbox:
                    await loop.run_in_executor(None, self.imap.close)
                await loop.run_in_executor(None, self.imap.logout)
                log_print("IMAP connection closed.")
            except imaplib.IMAP4.error as e:
                log_print(f"Error closing IMAP connection: {e}")
            except OSError as e:
                log_print(f"Socket error during IMAP close/logout: {e}")
            finally:
                self._drop_connection()


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace('\\"', '"').replace('\\\\', '\\')
    return value


def parse_list_entry(mailbox_entry):
    """Parse one LIST response entry into {flags, delimiter, path, name}, or None."""
    if isinstance(mailbox_entry, tuple):
        # Name sent as a literal: (b'(\\HasNoChildren) "/" {5}', b'Hello')
        prefix = mailbox_entry[0].decode('utf-8', errors='replace')
        literal = mailbox_entry[1].decode('utf-8', errors='replace')
        line = re.sub(r'\{\d+\}$', '', prefix.rstrip()) + '"' + literal.replace('"', '\\"') + '"'
    elif isinstance(mailbox_entry, bytes):
        line = mailbox_entry.decode('utf-8', errors='replace')
    elif mailbox_entry:
        line = str(mailbox_entry)
    else:
        return None

    match = _LIST_RE.match(line.strip())
    if not match:
        debug_print(f"Unparseable LIST entry: {line}")
        return None

    delimiter = match.group('delimiter')
    delimiter = '' if delimiter.upper() == 'NIL' else _unquote(delimiter)
    path = _unquote(match.group('name').strip())
    name = path.rsplit(delimiter, 1)[-1] if delimiter else path
    return {'flags': match.group('flags'), 'delimiter': delimiter, 'path': path, 'name': name}


def _addresses(values) -> list[Address]:
    result = []
    for name, addr in getaddresses([str(v) for v in values or []]):
        if not addr:
            continue
        result.append(Address.from_string(decode_field(name), addr))
    return result


def build_envelope(header_bytes: bytes) -> Envelope:
    msg = email.message_from_bytes(header_bytes)
    return Envelope(
        subject=decode_field(msg.get('Subject', '')),
        date=parse_email_date(msg.get('Date', '')),
        message_id=str(msg.get('Message-ID', '') or '').strip(),
        from_=_addresses(msg.get_all('From')),
        to=_addresses(msg.get_all('To')),
        cc=_addresses(msg.get_all('Cc')),
        bcc=_addresses(msg.get_all('Bcc')),
    )


def build_raw_message(parsed: dict) -> RawMessage:
    """Split a parsed FETCH entry into envelope (header-field literal) and content sections."""
    header_bytes = None
    sections = {}
    for label, literal in parsed['literals'].items():
        if label is not None and label.upper().startswith('HEADER'):
            header_bytes = literal
        else:
            sections[label] = literal

    if header_bytes is None:
        # Server ignored the header fetch; the content section starts with the same headers
        header_bytes = next((value for value in sections.values() if value), b'')

    return RawMessage(
        uid=parsed['uid'] if parsed['uid'] is not None else 0,
        seq=parsed['seq'],
        envelope=build_envelope(header_bytes) if header_bytes else Envelope(),
        flags=parsed['flags'],
        internal_date=parsed['internal_date'],
        sections=sections,
    )


def get_credentials(client_secret_file_path: str):
    """Obtain or refresh OAuth2 credentials for XOAUTH2 accounts."""
    creds = None
    if os.path.exists(TOKEN_PATH):
        try:
            creds = Credentials.from_authorized_user_file(TOKEN_PATH, SCOPES)
        except (ValueError, OSError) as e:
            log_print(f"Error loading token from {TOKEN_PATH}: {e}. Will attempt to re-authenticate.")
            creds = None

    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            try:
                log_print("Credentials expired. Refreshing token...")
                creds.refresh(Request())
                log_print("Token refreshed successfully.")
            except Exception as e:
                log_print(f"Error refreshing token: {e}. Proceeding to full authentication flow.")
                creds = None

        if not creds:
            log_print("No valid credentials, attempting to authenticate...")
            if not os.path.exists(client_secret_file_path):
                raise ImapConnectionError(f"Client secret file not found at '{client_secret_file_path}'.")
            try:
                flow = InstalledAppFlow.from_client_secrets_file(client_secret_file_path, SCOPES)
                creds = flow.run_local_server(port=0)
                log_print("Authentication successful.")
            except Exception as e:
                raise ImapConnectionError(f"OAuth2 authentication failed: {e}") from e

        try:
            with open(TOKEN_PATH, 'w') as token_file:
                token_file.write(creds.to_json())
            log_print(f"Credentials saved to {TOKEN_PATH}")
        except OSError as e:
            log_print(f"Error saving token to {TOKEN_PATH}: {e}")

    return creds
