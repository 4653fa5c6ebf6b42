"""Structured and full-text search over the cached emails."""

import config
from models import EmailSummary, SearchOptions
from utils import debug_print, from_db_timestamp, parse_iso_datetime, to_utc_iso

SUMMARY_COLUMNS = '''
    e.id, a.name AS account_name, f.path AS folder_path, e.subject,
    e.sender_name, e.sender_email, e.date, e.body_text
'''


def clamp_limit(limit, default=None) -> int:
    """Requests <= 0 get the default, anything above the ceiling is cut down to it."""
    if default is None:
        default = config.DEFAULT_SEARCH_RESULT_LIMIT
    if not limit or limit <= 0:
        limit = default
    return max(1, min(int(limit), config.MAX_SEARCH_RESULT_LIMIT))


def escape_fts_query(text) -> str:
    """
    Turns free-form user text into a safe FTS5 query: every whitespace
    separated token becomes a quoted string (embedded quotes doubled), and
    tokens are AND-ed. Returns "" when there is nothing to search for.
    """
    # Tokens made only of punctuation index to nothing
    tokens = [token for token in (text or '').split() if any(ch.isalnum() for ch in token)]
    return ' AND '.join('"' + token.replace('"', '""') + '"' for token in tokens)


def make_snippet(body_text, length=None) -> str:
    if not body_text:
        return ''
    if length is None:
        length = config.SNIPPET_LENGTH
    if len(body_text) > length:
        return body_text[:length] + '...'
    return body_text


def _like_pattern(value: str) -> str:
    escaped = value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f'%{escaped}%'


def _present(value) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def build_search_query(options: SearchOptions, limit: int):
    """Translates the present filters into one parameterized, AND-ed query. Returns (sql, params)."""
    conditions = []
    params = []

    if _present(options.account):
        conditions.append("a.name = ?")
        params.append(options.account)
    if _present(options.folder):
        conditions.append("f.path = ?")
        params.append(options.folder)
    if _present(options.sender):
        conditions.append("(e.sender_email LIKE ? ESCAPE '\\' OR e.sender_name LIKE ? ESCAPE '\\')")
        pattern = _like_pattern(options.sender)
        params.extend([pattern, pattern])
    if _present(options.recipient):
        conditions.append("e.recipients LIKE ? ESCAPE '\\'")
        params.append(_like_pattern(options.recipient))
    if _present(options.subject):
        conditions.append("e.subject LIKE ? ESCAPE '\\'")
        params.append(_like_pattern(options.subject))
    if _present(options.date_from):
        conditions.append("e.date >= ?")
        params.append(to_utc_iso(parse_iso_datetime(options.date_from, 'date_from')))
    if _present(options.date_to):
        conditions.append("e.date <= ?")
        params.append(to_utc_iso(parse_iso_datetime(options.date_to, 'date_to')))
    if _present(options.body):
        fts_query = escape_fts_query(options.body)
        if fts_query:
            conditions.append("e.id IN (SELECT rowid FROM emails_fts WHERE emails_fts MATCH ?)")
            params.append(fts_query)

    sql = f'''
        SELECT {SUMMARY_COLUMNS}
        FROM emails e
        JOIN accounts a ON a.id = e.account_id
        JOIN folders f ON f.id = e.folder_id
    '''
    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " ORDER BY e.date DESC, e.id DESC LIMIT ?"
    params.append(limit)
    return sql, params


def _row_to_summary(row) -> EmailSummary:
    return EmailSummary(
        id=row['id'],
        account_name=row['account_name'],
        folder_path=row['folder_path'],
        subject=row['subject'],
        sender_name=row['sender_name'],
        sender_email=row['sender_email'],
        date=from_db_timestamp(row['date']),
        snippet=make_snippet(row['body_text']),
    )


async def search_emails(db_manager, options: SearchOptions, default_limit=None) -> list[EmailSummary]:
    if _present(options.account):
        # Unknown account is a not-found error, not an empty result
        await db_manager.get_account_id_by_name(options.account)

    limit = clamp_limit(options.limit, default_limit)
    sql, params = build_search_query(options, limit)
    debug_print(f"search: {sql.strip()} {params}")
    async with db_manager.db.execute(sql, params) as cursor:
        return [_row_to_summary(row) async for row in cursor]


async def search_fts(db_manager, query, account_name=None, limit=None, default_limit=None) -> list[EmailSummary]:
    """Full-text only search against the shadow index."""
    fts_query = escape_fts_query(query)
    if not fts_query:
        return []
    if account_name:
        await db_manager.get_account_id_by_name(account_name)

    sql = f'''
        SELECT {SUMMARY_COLUMNS}
        FROM emails_fts
        JOIN emails e ON e.id = emails_fts.rowid
        JOIN accounts a ON a.id = e.account_id
        JOIN folders f ON f.id = e.folder_id
        WHERE emails_fts MATCH ?
    '''
    params = [fts_query]
    if account_name:
        sql += " AND a.name = ?"
        params.append(account_name)
    sql += " ORDER BY e.date DESC, e.id DESC LIMIT ?"
    params.append(clamp_limit(limit, default_limit))

    async with db_manager.db.execute(sql, params) as cursor:
        return [_row_to_summary(row) async for row in cursor]
