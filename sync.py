import datetime

import aiosqlite
from tqdm import tqdm

from accounts import AccountRegistry
from db import DatabaseManager
from errors import ImapConnectionError, ImapConnectionLostError, MailCacheError
from models import Folder, SyncResult
from normalizer import normalize_message
from utils import debug_print, log_print


class EmailSyncer:
    """Pulls the recent window of one account's folders into the cache."""

    def __init__(self, db_manager: DatabaseManager, registry: AccountRegistry, account_name: str):
        self.db_manager = db_manager
        self.registry = registry
        self.account_name = account_name
        self.client = registry.get(account_name)
        self.result = SyncResult(account=account_name)
        self.account_id = None
        self.last_run_id = None
        self.pbar = None

    async def start_sync(self, folder=None):
        """Upsert the account row and log the start of the run"""
        self.account_id = await self.db_manager.upsert_account(self.client.account)
        target = folder or 'all folders'
        self.last_run_id = await self.db_manager.log_sync_start(
            self.account_name, folder, f'Starting sync of {target} for {self.account_name}')

    async def finish_sync(self, status=None, message=None):
        status = status or self.result.status
        if message is None:
            message = (f'{len(self.result.folders_synced)} folders synced, '
                       f'{len(self.result.folders_failed)} failed, '
                       f'{self.result.messages_cached} messages cached, '
                       f'{self.result.messages_failed} failed')
        await self.db_manager.log_sync_end(self.last_run_id, status, message[:200])

    async def process_message(self, raw, folder_id, path):
        """Normalize and cache one message. Returns 'saved' or 'fail'."""
        email_record = normalize_message(raw)
        try:
            async with self.db_manager.transaction():
                await self.db_manager.upsert_email(self.account_id, folder_id, email_record)
        except (aiosqlite.Error, ValueError, TypeError) as e:
            log_print(f"Failed to cache UID {raw.uid} in {self.account_name}/{path}: {e}")
            return 'fail'
        return 'saved'

    async def sync_folder(self, path, name=None):
        """Refresh one folder: status, folder row, then the recent message window."""
        status = await self.client.get_folder_status(path)
        folder = Folder(
            name=name or path,
            path=path,
            message_count=status['message_count'],
            last_synced=datetime.datetime.now(datetime.timezone.utc),
        )
        folder_id = await self.db_manager.upsert_folder(self.account_id, folder)

        messages = await self.client.fetch_messages(path)
        self.result.messages_fetched += len(messages)
        debug_print(f"Fetched {len(messages)} of {folder.message_count} messages from {self.account_name}/{path}")

        saved_count = 0
        self.pbar = tqdm(total=len(messages), desc=f'Caching {self.account_name}/{path}', disable=not messages)
        try:
            for raw in messages:
                result = await self.process_message(raw, folder_id, path)
                if result == 'saved':
                    saved_count += 1
                    self.result.messages_cached += 1
                else:
                    self.result.messages_failed += 1
                self.pbar.update(1)
        finally:
            self.pbar.close()
            self.pbar = None

        self.result.folders_synced.append(path)
        return saved_count

    async def run(self, folder=None) -> SyncResult:
        await self.start_sync(folder)
        try:
            if folder:
                await self.sync_folder(folder)
            else:
                folders = await self.client.list_folders()
                log_print(f"Syncing {len(folders)} folders for {self.account_name}")
                for entry in folders:
                    try:
                        await self.sync_folder(entry['path'], entry['name'])
                    except ImapConnectionLostError as e:
                        # Session reopens on the next folder; a failed login aborts there
                        log_print(f"Connection dropped while syncing {entry['path']} for {self.account_name}: {e}")
                        self.result.folders_failed[entry['path']] = str(e)
                    except ImapConnectionError:
                        raise
                    except (MailCacheError, aiosqlite.Error) as e:
                        log_print(f"Failed to sync folder {entry['path']} for {self.account_name}: {e}")
                        self.result.folders_failed[entry['path']] = str(e)
        except Exception as e:
            if folder:
                self.result.folders_failed[folder] = str(e)
            await self.finish_sync('ERROR', str(e))
            raise

        await self.finish_sync()
        log_print(f"Sync of {self.account_name} finished: {self.result.status} "
                  f"({self.result.messages_cached} cached, {self.result.messages_failed} failed)")
        return self.result


async def sync_account(db_manager: DatabaseManager, registry: AccountRegistry, account_name, folder=None) -> SyncResult:
    """
    Sync one folder, or every folder of the account when folder is empty.

    A failing folder is recorded in the result and the remaining folders
    still run, including one whose connection dropped mid-command. A failed
    connect or login aborts the whole operation.
    """
    syncer = EmailSyncer(db_manager, registry, account_name)
    return await syncer.run(folder or None)


async def sync_folder(db_manager: DatabaseManager, registry: AccountRegistry, account_name, folder) -> SyncResult:
    return await sync_account(db_manager, registry, account_name, folder)
