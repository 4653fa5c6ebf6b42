# tests/test_fastmcp_server.py - tool handlers against a mocked manager
import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import fastmcp_server
from errors import AccountNotFoundError, EmailNotFoundError, InvalidInputError
from models import Email, EmailSummary, Folder, SyncResult


@pytest.fixture
def mock_manager():
    manager = MagicMock()
    manager.registry.names.return_value = ['work']
    manager.list_folders = AsyncMock(return_value=[])
    manager.search = AsyncMock(return_value=[])
    manager.search_fts = AsyncMock(return_value=[])
    manager.get_email = AsyncMock()
    manager.sync_account = AsyncMock()
    fastmcp_server.init_manager(manager)
    with patch('builtins.print'):
        yield manager
    fastmcp_server._state['manager'] = None


def summary(id, subject):
    return EmailSummary(id=id, account_name='work', folder_path='INBOX', subject=subject,
                        sender_name='Alice', sender_email='alice@example.com',
                        date=datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc), snippet='hi')


def test_get_manager_before_startup():
    fastmcp_server._state['manager'] = None
    with pytest.raises(RuntimeError):
        fastmcp_server.get_manager()


@pytest.mark.asyncio
async def test_health_check(mock_manager):
    result = await fastmcp_server.health_check()
    assert result['status'] == 'healthy'
    assert result['accounts'] == ['work']


@pytest.mark.asyncio
async def test_health_check_while_starting():
    fastmcp_server._state['manager'] = None
    result = await fastmcp_server.health_check()
    assert result['status'] == 'starting'
    assert result['accounts'] == []


@pytest.mark.asyncio
async def test_search_emails_tool(mock_manager):
    mock_manager.search.return_value = [summary(3, 'C'), summary(2, 'B')]

    result = await fastmcp_server.search_emails(account='work', date_from='2024-01-02T00:00:00Z')

    options = mock_manager.search.call_args[0][0]
    assert options.account == 'work'
    assert options.date_from == '2024-01-02T00:00:00Z'
    assert options.limit == 0
    assert result['count'] == 2
    assert [e['subject'] for e in result['emails']] == ['C', 'B']
    assert result['emails'][0]['date'] == '2024-01-01T12:00:00+00:00'


@pytest.mark.asyncio
async def test_search_emails_tool_reports_typed_error(mock_manager):
    mock_manager.search.side_effect = InvalidInputError("invalid date_from format", {'date_from': 'soon'})

    result = await fastmcp_server.search_emails(date_from='soon')

    assert result == {
        "error": "invalid date_from format",
        "error_type": "InvalidInputError",
        "details": {'date_from': 'soon'},
    }


@pytest.mark.asyncio
async def test_search_fulltext_tool(mock_manager):
    mock_manager.search_fts.return_value = [summary(1, 'A')]
    result = await fastmcp_server.search_fulltext('report', account='work', limit=5)
    mock_manager.search_fts.assert_awaited_once_with('report', 'work', 5)
    assert result['count'] == 1


@pytest.mark.asyncio
async def test_get_email_tool(mock_manager):
    mock_manager.get_email.return_value = Email(uid=9, id=42, subject='Hello', body_text='body',
                                                account_name='work', folder_path='INBOX')
    result = await fastmcp_server.get_email(42)
    assert result['id'] == 42
    assert result['body_text'] == 'body'
    assert result['date'] == '1970-01-01T00:00:00+00:00'


@pytest.mark.asyncio
async def test_get_email_tool_not_found(mock_manager):
    mock_manager.get_email.side_effect = EmailNotFoundError(7)
    result = await fastmcp_server.get_email(7)
    assert result['error_type'] == 'EmailNotFoundError'
    assert result['details'] == {'email_id': 7}


@pytest.mark.asyncio
async def test_list_folders_tool(mock_manager):
    mock_manager.list_folders.return_value = [Folder(name='INBOX', path='INBOX', account_name='work')]
    result = await fastmcp_server.list_folders('work')
    assert result == {"folders": [{
        'name': 'INBOX', 'path': 'INBOX', 'id': None, 'account_id': None, 'account_name': 'work',
        'message_count': 0, 'last_synced': None,
    }]}


@pytest.mark.asyncio
async def test_list_folders_tool_unknown_account(mock_manager):
    mock_manager.list_folders.side_effect = AccountNotFoundError('home')
    result = await fastmcp_server.list_folders('home')
    assert result['error_type'] == 'AccountNotFoundError'


@pytest.mark.asyncio
async def test_sync_account_tool(mock_manager):
    mock_manager.sync_account.return_value = SyncResult(account='work', folders_synced=['INBOX'],
                                                        folders_failed={'Spam': 'FETCH failed'})
    result = await fastmcp_server.sync_account('work')
    mock_manager.sync_account.assert_awaited_once_with('work', None)
    assert result['status'] == 'COMPLETED_WITH_ERRORS'
    assert result['folders_failed'] == {'Spam': 'FETCH failed'}


@pytest.mark.asyncio
async def test_lifespan_keeps_injected_manager(mock_manager):
    async with fastmcp_server.lifespan(fastmcp_server.mcp):
        assert fastmcp_server.get_manager() is mock_manager
    assert fastmcp_server.get_manager() is mock_manager
    mock_manager.close.assert_not_called()


@pytest.mark.asyncio
async def test_lifespan_creates_and_closes_manager(monkeypatch):
    fastmcp_server._state['manager'] = None
    monkeypatch.setenv('CACHE_PATH', ':memory:')
    monkeypatch.setenv('ACCOUNT_NAME', 'work')
    monkeypatch.setenv('IMAP_HOST', 'imap.example.com')
    monkeypatch.setenv('IMAP_USERNAME', 'me@example.com')
    monkeypatch.setenv('IMAP_PASSWORD', 'secret')
    created = MagicMock()
    created.close = AsyncMock()

    with patch('fastmcp_server.create_manager', new_callable=AsyncMock, return_value=created) as mock_create, \
         patch('builtins.print'):
        async with fastmcp_server.lifespan(fastmcp_server.mcp):
            assert fastmcp_server.get_manager() is created

    settings = mock_create.call_args[0][0]
    assert settings.account_names() == ['work']
    created.close.assert_awaited_once()
    assert fastmcp_server._state['manager'] is None
