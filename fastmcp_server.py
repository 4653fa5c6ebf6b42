import datetime
from contextlib import asynccontextmanager

import uvicorn
from mcp.server.fastmcp import FastMCP

from config import load_settings, validate_settings
from errors import MailCacheError
from manager import EmailManager, create_manager
from models import SearchOptions
from utils import log_print

# Set by the lifespan handler, or directly by init_manager when embedding
_state = {'manager': None}


def init_manager(manager: EmailManager):
    _state['manager'] = manager


def get_manager() -> EmailManager:
    if _state['manager'] is None:
        raise RuntimeError("Email manager not initialized. Server might be starting up or an error occurred.")
    return _state['manager']


@asynccontextmanager
async def lifespan(server):
    """Open the cache and register accounts on startup; close everything on shutdown."""
    log_print("MCP Server starting up...")
    owned = _state['manager'] is None
    if owned:
        settings = load_settings()
        validate_settings(settings)
        init_manager(await create_manager(settings))
    log_print("Email cache ready.")
    try:
        yield
    finally:
        log_print("MCP Server shutting down...")
        if owned and _state['manager'] is not None:
            await _state['manager'].close()
            _state['manager'] = None


mcp = FastMCP("email-cache", lifespan=lifespan)


def error_response(error: MailCacheError) -> dict:
    return {"error": error.message, "error_type": error.__class__.__name__, "details": error.details}


@mcp.tool()
async def health_check() -> dict:
    """
    Checks the health of the MCP server.
    Returns a dictionary with the server status, configured accounts and current timestamp.
    """
    manager = _state['manager']
    return {
        "status": "healthy" if manager is not None else "starting",
        "accounts": manager.registry.names() if manager is not None else [],
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }


@mcp.tool()
async def list_folders(account: str = None) -> dict:
    """
    Lists cached folders, optionally for one account. A configured account
    that has never been synced is synced first.
    """
    try:
        folders = await get_manager().list_folders(account)
    except MailCacheError as e:
        log_print(f"Error in list_folders: {e}")
        return error_response(e)
    return {"folders": [folder.to_dict() for folder in folders]}


@mcp.tool()
async def search_emails(account: str = None, folder: str = None, sender: str = None,
                        recipient: str = None, subject: str = None, body: str = None,
                        date_from: str = None, date_to: str = None, limit: int = 0) -> dict:
    """
    Searches cached emails. All filters are optional and combined with AND.
    Dates are ISO 8601 (e.g. 2024-01-02T00:00:00Z). Results are newest first.
    """
    options = SearchOptions(account=account, folder=folder, sender=sender, recipient=recipient,
                            subject=subject, body=body, date_from=date_from, date_to=date_to,
                            limit=limit)
    try:
        results = await get_manager().search(options)
    except MailCacheError as e:
        log_print(f"Error in search_emails: {e}")
        return error_response(e)
    return {"count": len(results), "emails": [summary.to_dict() for summary in results]}


@mcp.tool()
async def search_fulltext(query: str, account: str = None, limit: int = 0) -> dict:
    """Full-text search over subject, sender and body of cached emails."""
    try:
        results = await get_manager().search_fts(query, account, limit)
    except MailCacheError as e:
        log_print(f"Error in search_fulltext: {e}")
        return error_response(e)
    return {"count": len(results), "emails": [summary.to_dict() for summary in results]}


@mcp.tool()
async def get_email(email_id: int) -> dict:
    """Returns one cached email by id. A missing body is re-fetched from the server."""
    try:
        email = await get_manager().get_email(email_id)
    except MailCacheError as e:
        log_print(f"Error in get_email: {e}")
        return error_response(e)
    return email.to_dict()


@mcp.tool()
async def sync_account(account: str, folder: str = None) -> dict:
    """
    Syncs the most recent messages of every folder of an account, or of one folder.
    Blocks until every folder has been attempted.
    """
    log_print(f"Triggering sync: account={account}, folder={folder or 'all'}")
    try:
        result = await get_manager().sync_account(account, folder)
    except MailCacheError as e:
        log_print(f"Error during sync of {account}: {e}")
        return error_response(e)
    return result.to_dict()


def serve(transport="stdio", host="127.0.0.1", port=8001):
    if transport == "stdio":
        mcp.run()
    else:
        log_print(f"Starting email cache MCP server on {host}:{port}...")
        uvicorn.run(mcp.streamable_http_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    serve()
