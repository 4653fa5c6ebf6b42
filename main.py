import argparse
import asyncio
import os
import sys

from tabulate import tabulate

# Local imports
import config # Ensure config is imported to allow modification of DEBUG_MODE
from config import load_settings, validate_settings
from errors import MailCacheError
from manager import create_manager
from models import SearchOptions
from utils import log_print

SUBJECT_WIDTH = 60


def _truncate(text, width):
    text = text or ''
    return text if len(text) <= width else text[:width - 3] + '...'


def build_settings(args, require_accounts=False):
    """Settings from the environment, with command-line overrides applied."""
    settings = load_settings()
    if args.db:
        settings.cache_path = args.db
    if settings.debug:
        config.DEBUG_MODE = True
    if require_accounts or settings.accounts:
        validate_settings(settings)
    return settings


def format_summaries(summaries) -> str:
    rows = [
        [s.id, s.date.strftime('%Y-%m-%d %H:%M') if s.date else '', s.account_name, s.folder_path,
         s.sender_email or s.sender_name, _truncate(s.subject, SUBJECT_WIDTH)]
        for s in summaries
    ]
    return tabulate(rows, headers=['ID', 'Date', 'Account', 'Folder', 'From', 'Subject'], tablefmt='simple')


def format_email(email) -> str:
    fields = [
        ['ID', email.id],
        ['Account', email.account_name],
        ['Folder', email.folder_path],
        ['UID', email.uid],
        ['Message-ID', email.message_id],
        ['Date', email.date.isoformat() if email.date else ''],
        ['From', f"{email.sender_name} <{email.sender_email}>" if email.sender_name else email.sender_email],
        ['To', ', '.join(email.recipients)],
        ['Subject', email.subject],
        ['Flags', ' '.join(email.flags)],
    ]
    body = email.body_text or '(no body cached)'
    return tabulate(fields, tablefmt='plain') + '\n\n' + body


async def handle_sync_command(args):
    settings = build_settings(args, require_accounts=True)
    manager = await create_manager(settings)
    try:
        account_names = [args.account] if args.account else settings.account_names()
        rows = []
        failed = []
        for account_name in account_names:
            # A connection failure is fatal for that account only
            try:
                result = await manager.sync_account(account_name, args.folder)
            except MailCacheError as e:
                log_print(f"Sync of {account_name} failed: {e.message}")
                rows.append([account_name, 'ERROR', 0, 0, 0, 0])
                failed.append(account_name)
                continue
            rows.append([account_name, result.status, len(result.folders_synced), len(result.folders_failed),
                         result.messages_cached, result.messages_failed])
            for path, reason in result.folders_failed.items():
                log_print(f"  {account_name}/{path}: {reason}")
        print(tabulate(rows, headers=['Account', 'Status', 'Folders', 'Failed', 'Cached', 'Msg errors']))
        if failed:
            log_print(f"Sync failed for: {', '.join(failed)}")
            sys.exit(1)
    finally:
        await manager.close()


async def handle_search_command(args):
    settings = build_settings(args)
    manager = await create_manager(settings)
    try:
        if args.fulltext:
            results = await manager.search_fts(args.fulltext, args.account, args.limit)
        else:
            options = SearchOptions(
                account=args.account,
                folder=args.folder,
                sender=args.sender,
                recipient=args.recipient,
                subject=args.subject,
                body=args.body,
                date_from=args.date_from,
                date_to=args.date_to,
                limit=args.limit,
            )
            results = await manager.search(options)
        if not results:
            print("No matching emails.")
            return
        print(format_summaries(results))
        print(f"\n{len(results)} result(s)")
    finally:
        await manager.close()


async def handle_show_command(args):
    settings = build_settings(args)
    manager = await create_manager(settings)
    try:
        email = await manager.get_email(args.email_id)
        print(format_email(email))
    finally:
        await manager.close()


async def handle_folders_command(args):
    settings = build_settings(args)
    manager = await create_manager(settings)
    try:
        folders = await manager.list_folders(args.account)
        rows = [
            [f.account_name, f.path, f.message_count,
             f.last_synced.strftime('%Y-%m-%d %H:%M') if f.last_synced else 'never']
            for f in folders
        ]
        print(tabulate(rows, headers=['Account', 'Folder', 'Messages', 'Last synced']))
    finally:
        await manager.close()


def build_parser():
    parser = argparse.ArgumentParser(description='Local email cache: sync IMAP folders and search them offline')
    parser.add_argument('--db', help='Path to SQLite cache file (default: $CACHE_PATH or email_cache.db).')
    parser.add_argument('--debug', action='store_true', help='Enable detailed debug output.')

    subparsers = parser.add_subparsers(title='commands', dest='command', required=True, help='Available commands')

    # --- Sync Command ---
    sync_parser = subparsers.add_parser('sync', help='Fetch the most recent messages of each folder into the cache.')
    sync_parser.add_argument('--account', help='Account to sync (default: every configured account).')
    sync_parser.add_argument('--folder', help='Single folder to sync (default: all folders).')

    # --- Search Command ---
    search_parser = subparsers.add_parser('search', help='Search cached emails.')
    search_parser.add_argument('--account', help='Restrict to one account.')
    search_parser.add_argument('--folder', help='Restrict to one folder path.')
    search_parser.add_argument('--sender', help='Substring of sender address or name.')
    search_parser.add_argument('--recipient', help='Substring of a recipient address.')
    search_parser.add_argument('--subject', help='Substring of the subject.')
    search_parser.add_argument('--body', help='Full-text terms that must appear in the message.')
    search_parser.add_argument('--date-from', help='Earliest date, ISO 8601 (e.g. 2024-01-02T00:00:00Z).')
    search_parser.add_argument('--date-to', help='Latest date, ISO 8601.')
    search_parser.add_argument('--fulltext', help='Full-text only search; other filters except --account are ignored.')
    search_parser.add_argument('--limit', type=int, default=0, help='Maximum results (default from SEARCH_RESULT_LIMIT, max 1000).')

    # --- Show Command ---
    show_parser = subparsers.add_parser('show', help='Show one cached email by id.')
    show_parser.add_argument('email_id', type=int, help='Email id as printed by search.')

    # --- Folders Command ---
    folders_parser = subparsers.add_parser('folders', help='List cached folders.')
    folders_parser.add_argument('--account', help='Restrict to one account; syncs it first if never synced.')

    # --- Serve MCP Command ---
    serve_mcp_parser = subparsers.add_parser('serve-mcp', help='Start the Model Context Protocol (MCP) server.')
    serve_mcp_parser.add_argument('--transport', choices=['stdio', 'http'], default='stdio', help='MCP transport (default: stdio).')
    serve_mcp_parser.add_argument('--mcp-host', default='127.0.0.1', help='Host for the HTTP transport (default: 127.0.0.1).')
    serve_mcp_parser.add_argument('--mcp-port', type=int, default=8001, help='Port for the HTTP transport (default: 8001).')
    return parser


async def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.debug:
        config.DEBUG_MODE = True # Set DEBUG_MODE in the config module
        log_print("Debug mode enabled (via config.DEBUG_MODE).")
        log_print(f"Parsed arguments: {args}")

    # Command dispatching
    if args.command == 'sync':
        await handle_sync_command(args)
    elif args.command == 'search':
        await handle_search_command(args)
    elif args.command == 'show':
        await handle_show_command(args)
    elif args.command == 'folders':
        await handle_folders_command(args)
    elif args.command == 'serve-mcp':
        # mcp.run() starts its own event loop, so the server runs outside this one
        return args
    else:
        parser.print_help()
    return None


def run():
    try:
        args = asyncio.run(main())
        if args is not None and args.command == 'serve-mcp':
            from fastmcp_server import serve
            if args.db:
                os.environ['CACHE_PATH'] = args.db
            serve(args.transport, args.mcp_host, args.mcp_port)
    except KeyboardInterrupt:
        log_print("\nProgram terminated by user.")
    except MailCacheError as e:
        log_print(f"Error: {e.message}")
        sys.exit(1)


if __name__ == '__main__':
    run()
