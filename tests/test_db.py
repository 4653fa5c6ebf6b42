# tests/test_db.py

import datetime

import pytest
from hypothesis import given, settings, strategies as st, HealthCheck

from conftest import make_email
from config import AccountConfig
from errors import AccountNotFoundError, EmailNotFoundError, FolderNotFoundError
from models import Folder


async def fts_ids(db_manager, query):
    async with db_manager.db.execute("SELECT rowid FROM emails_fts WHERE emails_fts MATCH ?", (query,)) as cursor:
        return [row[0] async for row in cursor]


@pytest.mark.asyncio
async def test_database_connection(db_manager):
    """Test that we can establish a connection to the test database."""
    assert db_manager.db is not None
    cursor = await db_manager.db.cursor()
    await cursor.execute("SELECT 1")
    result = await cursor.fetchone()
    assert result[0] == 1
    await cursor.close()


@pytest.mark.asyncio
async def test_foreign_keys_enabled(db_manager):
    async with db_manager.db.execute("PRAGMA foreign_keys") as cursor:
        row = await cursor.fetchone()
    assert row[0] == 1


@pytest.mark.asyncio
async def test_connect_creates_parent_directory(tmp_path):
    from db import DatabaseManager
    path = tmp_path / "nested" / "dir" / "cache.db"
    manager = DatabaseManager(str(path))
    await manager.connect()
    await manager.close()
    assert path.exists()


@pytest.mark.asyncio
async def test_upsert_account_is_keyed_by_name(db_manager, account_config):
    first_id = await db_manager.upsert_account(account_config)
    changed = AccountConfig(name='work', imap_host='imap.other.com', imap_username='me@example.com',
                            imap_password='secret', imap_port=1993)
    second_id = await db_manager.upsert_account(changed)

    assert first_id == second_id
    async with db_manager.db.execute("SELECT COUNT(*), imap_host, imap_port FROM accounts") as cursor:
        count, host, port = await cursor.fetchone()
    assert count == 1
    assert host == 'imap.other.com'
    assert port == 1993


@pytest.mark.asyncio
async def test_upsert_folder_updates_count_and_keeps_id(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    synced = datetime.datetime(2024, 5, 1, 8, 30, tzinfo=datetime.timezone.utc)
    again = await db_manager.upsert_folder(account_id, Folder(name='INBOX', path='INBOX', message_count=42,
                                                              last_synced=synced))
    assert again == folder_id

    folders = await db_manager.list_folders('work')
    assert len(folders) == 1
    assert folders[0].message_count == 42
    assert folders[0].last_synced == synced
    assert folders[0].account_name == 'work'


@pytest.mark.asyncio
async def test_upsert_email_twice_leaves_one_row_with_latest_subject(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    first_id = await db_manager.upsert_email(account_id, folder_id, make_email(7, subject='First draft'))
    second_id = await db_manager.upsert_email(account_id, folder_id, make_email(7, subject='Final version'))

    assert first_id == second_id
    assert await db_manager.count_emails() == 1
    email = await db_manager.get_email_by_id(first_id)
    assert email.subject == 'Final version'


@pytest.mark.asyncio
async def test_same_uid_in_different_folders_are_distinct(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    other_folder_id = await db_manager.upsert_folder(account_id, Folder(name='Sent', path='Sent'))
    a = await db_manager.upsert_email(account_id, folder_id, make_email(1, subject='in inbox'))
    b = await db_manager.upsert_email(account_id, other_folder_id, make_email(1, subject='in sent'))
    assert a != b
    assert await db_manager.count_emails('work') == 2
    assert await db_manager.count_emails('work', 'Sent') == 1


@pytest.mark.asyncio
async def test_fts_index_follows_update(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    email_id = await db_manager.upsert_email(account_id, folder_id,
                                             make_email(1, subject='pineapple', body_text='tropical fruit'))
    assert await fts_ids(db_manager, 'pineapple') == [email_id]

    await db_manager.upsert_email(account_id, folder_id, make_email(1, subject='coconut', body_text='still tropical'))
    assert await fts_ids(db_manager, 'pineapple') == []
    assert await fts_ids(db_manager, 'coconut') == [email_id]
    assert await fts_ids(db_manager, 'fruit') == []


@pytest.mark.asyncio
async def test_fts_index_follows_delete(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    email_id = await db_manager.upsert_email(account_id, folder_id, make_email(1, subject='ephemeral'))
    await db_manager.delete_email(email_id)
    assert await fts_ids(db_manager, 'ephemeral') == []


@pytest.mark.asyncio
async def test_fts_indexes_sender_fields(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    email_id = await db_manager.upsert_email(account_id, folder_id, make_email(
        1, sender_name='Grace Hopper', sender_email='grace@navy.example'))
    assert await fts_ids(db_manager, 'Hopper') == [email_id]


@pytest.mark.asyncio
async def test_deleting_account_cascades(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    await db_manager.upsert_email(account_id, folder_id, make_email(1, subject='cascade me'))
    await db_manager.delete_account('work')

    assert await db_manager.count_emails() == 0
    assert await db_manager.list_folders() == []
    assert await fts_ids(db_manager, 'cascade') == []


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    with pytest.raises(RuntimeError):
        async with db_manager.transaction():
            await db_manager.upsert_email(account_id, folder_id, make_email(1, subject='never committed'))
            raise RuntimeError("boom")

    assert await db_manager.count_emails() == 0
    assert await fts_ids(db_manager, 'committed') == []


@pytest.mark.asyncio
async def test_get_email_by_id_denormalizes_account_and_folder(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    email_id = await db_manager.upsert_email(account_id, folder_id, make_email(3, subject='Joined'))
    email = await db_manager.get_email_by_id(email_id)
    assert email.id == email_id
    assert email.account_name == 'work'
    assert email.folder_path == 'INBOX'
    assert email.cached_at is not None


@pytest.mark.asyncio
async def test_get_email_by_id_unknown_raises(db_manager):
    with pytest.raises(EmailNotFoundError):
        await db_manager.get_email_by_id(999)


@pytest.mark.asyncio
async def test_lookups_for_unknown_names_raise(db_manager, cached_folder):
    account_id, _ = cached_folder
    with pytest.raises(AccountNotFoundError):
        await db_manager.get_account_id_by_name('nobody')
    with pytest.raises(AccountNotFoundError):
        await db_manager.list_folders('nobody')
    with pytest.raises(FolderNotFoundError):
        await db_manager.get_folder_id(account_id, 'Missing')


@pytest.mark.asyncio
async def test_has_emails(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    assert await db_manager.has_emails() is False
    await db_manager.upsert_email(account_id, folder_id, make_email(1))
    assert await db_manager.has_emails() is True
    assert await db_manager.has_emails('work') is True
    assert await db_manager.has_emails('other') is False


@pytest.mark.asyncio
async def test_rebuild_fts_index(db_manager, cached_folder):
    account_id, folder_id = cached_folder
    email_id = await db_manager.upsert_email(account_id, folder_id, make_email(1, body_text='rebuildable'))
    await db_manager.rebuild_fts_index()
    assert await fts_ids(db_manager, 'rebuildable') == [email_id]


@pytest.mark.asyncio
async def test_sync_run_logging(db_manager):
    run_id = await db_manager.log_sync_start('work', 'INBOX', 'starting')
    await db_manager.log_sync_end(run_id, 'COMPLETED', 'done')
    runs = await db_manager.get_sync_runs('work')
    assert len(runs) == 1
    assert runs[0]['status'] == 'COMPLETED'
    assert runs[0]['folder'] == 'INBOX'
    assert runs[0]['end_time'] is not None


safe_text = st.text(alphabet=st.characters(blacklist_categories=('Cs',)), max_size=30)

# Strategy for the serialized sub-structures of an email row
@st.composite
def structured_fields_strategy(draw):
    recipients = draw(st.lists(st.emails(), max_size=6))
    headers = draw(st.dictionaries(safe_text, safe_text, max_size=6))
    flags = draw(st.lists(st.sampled_from(['\\Seen', '\\Answered', '\\Flagged', '\\Draft', '$Label1']),
                          max_size=4, unique=True))
    naive_dt = draw(st.datetimes(
        min_value=datetime.datetime(1971, 1, 1, 0, 0, 0),
        max_value=datetime.datetime(2100, 1, 1, 0, 0, 0)
    ))
    aware_dt = naive_dt.replace(tzinfo=datetime.timezone.utc, microsecond=0)
    return recipients, headers, flags, aware_dt

@pytest.mark.asyncio
@settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(fields=structured_fields_strategy())
async def test_property_structured_columns_round_trip(db_manager, cached_folder, fields):
    """Property: recipients keep their order, headers and flags come back unchanged."""
    recipients, headers, flags, date = fields
    account_id, folder_id = cached_folder

    email_id = await db_manager.upsert_email(account_id, folder_id, make_email(
        1, recipients=recipients, headers=headers, flags=flags, date=date))

    stored = await db_manager.get_email_by_id(email_id)
    assert stored.recipients == recipients
    assert stored.headers == headers
    assert stored.flags == flags
    assert stored.date == date
