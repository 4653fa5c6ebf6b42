# conftest.py - Configuration for pytest
# Shared fixtures: in-memory cache, mocked imaplib, fake session clients.

import datetime as dtmodule # Alias to avoid conflict with fixture names
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio  # Import this to use async fixtures

from accounts import AccountRegistry
from config import AccountConfig, Settings
from db import DatabaseManager
from imap_client import ImapClient
from models import Address, Email, Envelope, Folder, RawMessage


def make_email(uid, subject='', body_text='', date=None, **kwargs):
    """Builds a normalized Email with sensible defaults for cache tests."""
    return Email(
        uid=uid,
        subject=subject,
        body_text=body_text,
        date=date or dtmodule.datetime(2024, 1, 1, 12, 0, 0, tzinfo=dtmodule.timezone.utc),
        **kwargs,
    )


def make_raw_message(uid, subject='Hello', sender=('Alice', 'alice@example.com'), to=('bob@example.com',),
                     body=b'Plain body', sections=None, date=None, flags=('\\Seen',), internal_date=None):
    """Builds a RawMessage as the IMAP session would return it."""
    envelope = Envelope(
        subject=subject,
        date=date,
        message_id=f'<{uid}@example.com>',
        from_=[Address.from_string(sender[0], sender[1])] if sender else [],
        to=[Address.from_string('', addr) for addr in to],
    )
    if sections is None:
        sections = {'': b'Subject: ' + subject.encode() + b'\r\n\r\n' + body} if body is not None else {}
    return RawMessage(uid=uid, envelope=envelope, flags=list(flags), sections=sections,
                      internal_date=internal_date)


@pytest.fixture
def account_config():
    return AccountConfig(
        name='work',
        imap_host='imap.example.com',
        imap_username='me@example.com',
        imap_password='secret',
    )


@pytest.fixture
def settings(account_config):
    return Settings(cache_path=':memory:', accounts=[account_config])


@pytest_asyncio.fixture
async def db_manager():
    """
    Provides a DatabaseManager instance connected to an in-memory SQLite database
    with schema initialized.
    """
    manager = DatabaseManager(":memory:")
    await manager.connect()  # connect also calls setup_schema
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def cached_folder(db_manager, account_config):
    """Creates the 'work' account with an INBOX folder; yields (account_id, folder_id)."""
    account_id = await db_manager.upsert_account(account_config)
    folder_id = await db_manager.upsert_folder(account_id, Folder(name='INBOX', path='INBOX', message_count=3))
    yield account_id, folder_id


@pytest_asyncio.fixture
async def mock_imap_client(account_config):
    """Provides an ImapClient instance with imaplib.IMAP4_SSL mocked."""
    with patch('imap_client.imaplib.IMAP4_SSL') as mock_imap_constructor:
        mock_imap_instance = MagicMock()
        mock_imap_constructor.return_value = mock_imap_instance

        client = ImapClient(account_config)
        client.imap = mock_imap_instance # Bypass connect() for most tests

        yield client, mock_imap_instance


@pytest.fixture
def fake_client_factory():
    """
    Returns a factory producing MagicMock session clients with the ImapClient
    interface; every client created is kept in factory.clients by account name.
    """
    clients = {}

    def factory(account):
        mock = MagicMock(spec=ImapClient)
        mock.account = account
        mock.name = account.name
        mock.is_connected = False
        mock.connect = AsyncMock()
        mock.close = AsyncMock()
        mock.list_folders = AsyncMock(return_value=[{'name': 'INBOX', 'path': 'INBOX'}])
        mock.get_folder_status = AsyncMock(return_value={'message_count': 0})
        mock.fetch_messages = AsyncMock(return_value=[])
        mock.fetch_message_by_uid = AsyncMock(return_value=None)
        clients[account.name] = mock
        return mock

    factory.clients = clients
    return factory


@pytest.fixture
def registry(fake_client_factory, account_config):
    reg = AccountRegistry(client_factory=fake_client_factory)
    reg.register(account_config)
    return reg


@pytest.fixture
def fake_client(registry, account_config):
    return registry.get(account_config.name)


@pytest.fixture
def mock_sync_datetime():
    """Patches 'sync.datetime' module."""
    with patch('sync.datetime') as mock_datetime_module:
        mock_datetime_module.timezone = dtmodule.timezone
        mock_datetime_module.datetime.now.return_value = dtmodule.datetime(2023, 1, 1, 12, 0, 0, tzinfo=dtmodule.timezone.utc)
        yield mock_datetime_module
