import asyncio

from accounts import AccountRegistry
from config import Settings
from db import DatabaseManager
from errors import AccountNotFoundError, InvalidInputError
from models import EmailSummary, Folder, SearchOptions, SyncResult
from repair import repair_missing_body
from search import search_emails, search_fts
from sync import sync_account
from utils import debug_print, log_print


class EmailManager:
    """
    Entry point used by the tool server and the CLI.

    Operations run one at a time: each takes the same lock, so the cache and
    the IMAP sessions are never used by two operations at once.
    """

    def __init__(self, db_manager: DatabaseManager, registry: AccountRegistry, settings: Settings):
        self.db_manager = db_manager
        self.registry = registry
        self.settings = settings
        self._lock = asyncio.Lock()

    async def register_accounts(self):
        """Register every configured account and make sure each has a cache row."""
        async with self._lock:
            for account in self.settings.accounts:
                self.registry.register(account)
                await self.db_manager.upsert_account(account)
            debug_print(f"Registered accounts: {', '.join(self.registry.names())}")

    async def sync_account(self, account_name, folder=None) -> SyncResult:
        if not account_name:
            raise InvalidInputError("account name is required")
        async with self._lock:
            return await sync_account(self.db_manager, self.registry, account_name, folder)

    async def search(self, options: SearchOptions) -> list[EmailSummary]:
        async with self._lock:
            return await search_emails(self.db_manager, options, self.settings.search_result_limit)

    async def search_fts(self, query, account_name=None, limit=None) -> list[EmailSummary]:
        async with self._lock:
            return await search_fts(self.db_manager, query, account_name, limit, self.settings.search_result_limit)

    async def get_email(self, email_id):
        if email_id is None:
            raise InvalidInputError("email id is required")
        try:
            email_id = int(email_id)
        except (TypeError, ValueError):
            raise InvalidInputError(f"invalid email id: {email_id!r}") from None
        async with self._lock:
            email = await self.db_manager.get_email_by_id(email_id)
            if not email.has_body:
                email = await repair_missing_body(self.db_manager, self.registry, email)
            return email

    async def list_folders(self, account_name=None) -> list[Folder]:
        async with self._lock:
            if not account_name:
                return await self.db_manager.list_folders()
            try:
                folders = await self.db_manager.list_folders(account_name)
            except AccountNotFoundError:
                if account_name not in self.registry:
                    raise
                folders = []
            if folders or account_name not in self.registry:
                return folders
            # Configured but never synced
            log_print(f"No cached folders for {account_name}; syncing first")
            await sync_account(self.db_manager, self.registry, account_name)
            return await self.db_manager.list_folders(account_name)

    async def close(self):
        async with self._lock:
            await self.registry.close_all()
            await self.db_manager.close()


async def create_manager(settings: Settings, registry: AccountRegistry = None) -> EmailManager:
    """Open the cache at settings.cache_path and register the configured accounts."""
    db_manager = DatabaseManager(settings.cache_path)
    await db_manager.connect()
    manager = EmailManager(db_manager, registry or AccountRegistry(), settings)
    await manager.register_accounts()
    return manager
