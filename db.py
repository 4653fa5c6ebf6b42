import datetime
import json
import os
from contextlib import asynccontextmanager

import aiosqlite

from config import AccountConfig
from errors import AccountNotFoundError, EmailNotFoundError, FolderNotFoundError
from models import Email, Folder
from utils import debug_print, from_db_timestamp, to_utc_iso


def _now_iso():
    return to_utc_iso(datetime.datetime.now(datetime.timezone.utc))


class DatabaseManager:
    def __init__(self, db_path):
        self.db_path = db_path
        self.db = None
        self._transaction_depth = 0

    async def connect(self):
        """Connect to the database"""
        if self.db_path != ':memory:':
            directory = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(directory, exist_ok=True)
        self.db = await aiosqlite.connect(self.db_path)
        self.db.row_factory = aiosqlite.Row
        await self.setup_schema()
        return self.db

    async def close(self):
        """Close the database connection"""
        if self.db:
            await self.db.commit()
            await self.db.close()
            self.db = None

    @asynccontextmanager
    async def transaction(self):
        """
        Groups writes so they commit together or not at all.

        Nested blocks join the outermost one; only the outermost commits or
        rolls back.
        """
        self._transaction_depth += 1
        try:
            yield self.db
        except BaseException:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                await self.db.rollback()
            raise
        else:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                await self.db.commit()

    async def _commit_unless_in_transaction(self):
        if self._transaction_depth == 0:
            await self.db.commit()

    async def setup_schema(self):
        """Set up the database schema"""
        await self.db.execute("PRAGMA journal_mode=WAL;")
        await self.db.execute("PRAGMA synchronous=NORMAL;")
        await self.db.execute("PRAGMA temp_store=MEMORY;")
        await self.db.execute("PRAGMA foreign_keys=ON;")

        await self.db.execute('''
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                imap_host TEXT NOT NULL DEFAULT '',
                imap_port INTEGER NOT NULL DEFAULT 993,
                imap_username TEXT NOT NULL DEFAULT '',
                smtp_host TEXT NOT NULL DEFAULT '',
                smtp_port INTEGER NOT NULL DEFAULT 587,
                smtp_username TEXT NOT NULL DEFAULT '',
                auth_method TEXT NOT NULL DEFAULT 'password',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        await self.db.execute('''
            CREATE TABLE IF NOT EXISTS folders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                path TEXT NOT NULL,
                message_count INTEGER NOT NULL DEFAULT 0,
                last_synced TEXT,
                UNIQUE(account_id, path)
            )
        ''')

        await self.db.execute('''
            CREATE TABLE IF NOT EXISTS emails (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                folder_id INTEGER NOT NULL REFERENCES folders(id) ON DELETE CASCADE,
                uid INTEGER NOT NULL,
                message_id TEXT NOT NULL DEFAULT '',
                subject TEXT NOT NULL DEFAULT '',
                sender_name TEXT NOT NULL DEFAULT '',
                sender_email TEXT NOT NULL DEFAULT '',
                recipients TEXT NOT NULL DEFAULT '[]',
                date TEXT NOT NULL,
                body_text TEXT NOT NULL DEFAULT '',
                body_html TEXT NOT NULL DEFAULT '',
                headers TEXT NOT NULL DEFAULT '{}',
                flags TEXT NOT NULL DEFAULT '[]',
                cached_at TEXT NOT NULL,
                UNIQUE(account_id, folder_id, uid)
            )
        ''')

        await self.db.execute('CREATE INDEX IF NOT EXISTS idx_emails_date ON emails(date)')
        await self.db.execute('CREATE INDEX IF NOT EXISTS idx_emails_account ON emails(account_id)')
        await self.db.execute('CREATE INDEX IF NOT EXISTS idx_emails_folder ON emails(folder_id)')
        await self.db.execute('CREATE INDEX IF NOT EXISTS idx_emails_sender ON emails(sender_email)')
        await self.db.execute('CREATE INDEX IF NOT EXISTS idx_folders_account ON folders(account_id)')

        # Full-text shadow of emails, kept in lockstep by the triggers below
        await self.db.execute('''
            CREATE VIRTUAL TABLE IF NOT EXISTS emails_fts USING fts5(
                subject,
                sender_email,
                sender_name,
                body_text,
                content='emails',
                content_rowid='id'
            )
        ''')

        await self.db.execute('''
            CREATE TRIGGER IF NOT EXISTS emails_ai AFTER INSERT ON emails BEGIN
                INSERT INTO emails_fts(rowid, subject, sender_email, sender_name, body_text)
                VALUES (new.id, new.subject, new.sender_email, new.sender_name, new.body_text);
            END
        ''')
        await self.db.execute('''
            CREATE TRIGGER IF NOT EXISTS emails_ad AFTER DELETE ON emails BEGIN
                INSERT INTO emails_fts(emails_fts, rowid, subject, sender_email, sender_name, body_text)
                VALUES ('delete', old.id, old.subject, old.sender_email, old.sender_name, old.body_text);
            END
        ''')
        await self.db.execute('''
            CREATE TRIGGER IF NOT EXISTS emails_au AFTER UPDATE ON emails BEGIN
                INSERT INTO emails_fts(emails_fts, rowid, subject, sender_email, sender_name, body_text)
                VALUES ('delete', old.id, old.subject, old.sender_email, old.sender_name, old.body_text);
                INSERT INTO emails_fts(rowid, subject, sender_email, sender_name, body_text)
                VALUES (new.id, new.subject, new.sender_email, new.sender_name, new.body_text);
            END
        ''')

        await self.db.execute('''
            CREATE TABLE IF NOT EXISTS sync_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_name TEXT NOT NULL,
                folder TEXT,
                start_time TEXT NOT NULL,
                end_time TEXT,
                status TEXT NOT NULL,
                message TEXT
            )
        ''')
        await self.db.commit()

    async def rebuild_fts_index(self):
        """Regenerate the full-text index from the emails table"""
        await self.db.execute("INSERT INTO emails_fts(emails_fts) VALUES ('rebuild')")
        await self._commit_unless_in_transaction()

    async def log_sync_start(self, account_name, folder=None, message=''):
        """Log the start of a sync operation"""
        async with self.db.execute('''
            INSERT INTO sync_runs (account_name, folder, start_time, status, message)
            VALUES (?, ?, ?, 'STARTED', ?)
        ''', (account_name, folder, _now_iso(), message)) as cursor:
            run_id = cursor.lastrowid
        await self._commit_unless_in_transaction()
        return run_id

    async def log_sync_end(self, run_id, status, message):
        """Log the completion of a sync operation"""
        await self.db.execute(
            "UPDATE sync_runs SET end_time = ?, status = ?, message = ? WHERE id = ?",
            (_now_iso(), status, message, run_id)
        )
        await self._commit_unless_in_transaction()

    async def get_sync_runs(self, account_name=None, limit=20) -> list[dict]:
        sql = "SELECT * FROM sync_runs"
        params = []
        if account_name:
            sql += " WHERE account_name = ?"
            params.append(account_name)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        async with self.db.execute(sql, params) as cursor:
            return [dict(row) async for row in cursor]

    # --- Upserts, keyed by natural identity ---
    async def upsert_account(self, account: AccountConfig) -> int:
        """Creates or refreshes the account row; returns its id."""
        now = _now_iso()
        async with self.db.execute('''
            INSERT INTO accounts (name, imap_host, imap_port, imap_username,
                                  smtp_host, smtp_port, smtp_username, auth_method,
                                  created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                imap_host = excluded.imap_host,
                imap_port = excluded.imap_port,
                imap_username = excluded.imap_username,
                smtp_host = excluded.smtp_host,
                smtp_port = excluded.smtp_port,
                smtp_username = excluded.smtp_username,
                auth_method = excluded.auth_method,
                updated_at = excluded.updated_at
            RETURNING id
        ''', (account.name, account.imap_host, account.imap_port, account.imap_username,
              account.smtp_host, account.smtp_port, account.smtp_username, account.auth_method,
              now, now)) as cursor:
            row = await cursor.fetchone()
        await self._commit_unless_in_transaction()
        return row[0]

    async def upsert_folder(self, account_id: int, folder: Folder) -> int:
        last_synced = to_utc_iso(folder.last_synced) if folder.last_synced else None
        async with self.db.execute('''
            INSERT INTO folders (account_id, name, path, message_count, last_synced)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(account_id, path) DO UPDATE SET
                name = excluded.name,
                message_count = excluded.message_count,
                last_synced = excluded.last_synced
            RETURNING id
        ''', (account_id, folder.name, folder.path, folder.message_count, last_synced)) as cursor:
            row = await cursor.fetchone()
        await self._commit_unless_in_transaction()
        folder.id = row[0]
        folder.account_id = account_id
        return row[0]

    async def upsert_email(self, account_id: int, folder_id: int, email: Email) -> int:
        """
        Inserts the email or overwrites the mutable fields of the existing row
        for (account, folder, uid). The row id survives the overwrite, and the
        full-text index follows through the update trigger.
        """
        cached_at = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
        async with self.db.execute('''
            INSERT INTO emails (account_id, folder_id, uid, message_id, subject,
                                sender_name, sender_email, recipients, date,
                                body_text, body_html, headers, flags, cached_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(account_id, folder_id, uid) DO UPDATE SET
                message_id = excluded.message_id,
                subject = excluded.subject,
                sender_name = excluded.sender_name,
                sender_email = excluded.sender_email,
                recipients = excluded.recipients,
                date = excluded.date,
                body_text = excluded.body_text,
                body_html = excluded.body_html,
                headers = excluded.headers,
                flags = excluded.flags,
                cached_at = excluded.cached_at
            RETURNING id
        ''', (account_id, folder_id, email.uid, email.message_id or '', email.subject or '',
              email.sender_name or '', email.sender_email or '',
              json.dumps(list(email.recipients), ensure_ascii=False), to_utc_iso(email.date),
              email.body_text or '', email.body_html or '',
              json.dumps(dict(email.headers), ensure_ascii=False), json.dumps(list(email.flags), ensure_ascii=False),
              to_utc_iso(cached_at))) as cursor:
            row = await cursor.fetchone()
        await self._commit_unless_in_transaction()
        email.id = row[0]
        email.account_id = account_id
        email.folder_id = folder_id
        email.cached_at = cached_at
        return row[0]

    async def delete_email(self, email_id: int):
        await self.db.execute("DELETE FROM emails WHERE id = ?", (email_id,))
        await self._commit_unless_in_transaction()

    async def delete_account(self, account_name: str):
        """Removes the account; its folders and emails go with it."""
        await self.db.execute("DELETE FROM accounts WHERE name = ?", (account_name,))
        await self._commit_unless_in_transaction()

    # --- Lookups ---
    async def get_account_id_by_name(self, name: str) -> int:
        async with self.db.execute("SELECT id FROM accounts WHERE name = ?", (name,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise AccountNotFoundError(name)
        return row[0]

    async def get_folder_id(self, account_id: int, path: str) -> int:
        async with self.db.execute(
            "SELECT id FROM folders WHERE account_id = ? AND path = ?", (account_id, path)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise FolderNotFoundError(account_id, path)
        return row[0]

    async def get_email_by_id(self, email_id: int) -> Email:
        async with self.db.execute('''
            SELECT e.*, a.name AS account_name, f.path AS folder_path
            FROM emails e
            JOIN accounts a ON a.id = e.account_id
            JOIN folders f ON f.id = e.folder_id
            WHERE e.id = ?
        ''', (email_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise EmailNotFoundError(email_id)
        return row_to_email(row)

    async def list_folders(self, account_name=None) -> list[Folder]:
        sql = '''
            SELECT f.*, a.name AS account_name
            FROM folders f
            JOIN accounts a ON a.id = f.account_id
        '''
        params = []
        if account_name:
            account_id = await self.get_account_id_by_name(account_name)
            sql += " WHERE f.account_id = ?"
            params.append(account_id)
        sql += " ORDER BY a.name, f.path"

        async with self.db.execute(sql, params) as cursor:
            return [
                Folder(
                    id=row['id'],
                    account_id=row['account_id'],
                    account_name=row['account_name'],
                    name=row['name'],
                    path=row['path'],
                    message_count=row['message_count'],
                    last_synced=from_db_timestamp(row['last_synced']),
                )
                async for row in cursor
            ]

    async def has_emails(self, account_name=None) -> bool:
        return await self.count_emails(account_name) > 0

    async def count_emails(self, account_name=None, folder_path=None) -> int:
        sql = "SELECT COUNT(*) FROM emails e JOIN accounts a ON a.id = e.account_id JOIN folders f ON f.id = e.folder_id"
        conditions, params = [], []
        if account_name:
            conditions.append("a.name = ?")
            params.append(account_name)
        if folder_path:
            conditions.append("f.path = ?")
            params.append(folder_path)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        async with self.db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        debug_print(f"count_emails({account_name}, {folder_path}) = {row[0]}")
        return row[0]


def row_to_email(row) -> Email:
    """Builds an Email from an emails row joined with account_name and folder_path."""
    return Email(
        id=row['id'],
        account_id=row['account_id'],
        folder_id=row['folder_id'],
        account_name=row['account_name'],
        folder_path=row['folder_path'],
        uid=row['uid'],
        message_id=row['message_id'],
        subject=row['subject'],
        sender_name=row['sender_name'],
        sender_email=row['sender_email'],
        recipients=json.loads(row['recipients'] or '[]'),
        date=from_db_timestamp(row['date']),
        body_text=row['body_text'],
        body_html=row['body_html'],
        headers=json.loads(row['headers'] or '{}'),
        flags=json.loads(row['flags'] or '[]'),
        cached_at=from_db_timestamp(row['cached_at']),
    )
