from accounts import AccountRegistry
from db import DatabaseManager
from models import Email
from normalizer import normalize_message
from utils import debug_print, log_print


async def repair_missing_body(db_manager: DatabaseManager, registry: AccountRegistry, email: Email) -> Email:
    """
    Re-fetch the body of a cached email that has none.

    Best effort: any failure is logged and the record passed in is returned
    unchanged. Never raises.
    """
    if email.has_body:
        return email

    debug_print(f"Email {email.id} has no body; re-fetching UID {email.uid} from "
                f"{email.account_name}/{email.folder_path}")
    try:
        client = registry.get(email.account_name)
        raw = await client.fetch_message_by_uid(email.folder_path, email.uid)
        if raw is None:
            log_print(f"Repair of email {email.id}: UID {email.uid} not found on server")
            return email

        fetched = normalize_message(raw)
        if not fetched.has_body:
            log_print(f"Repair of email {email.id}: re-fetched message has no body")
            return email

        # Keep the cached envelope fields when the refetch lacks them
        fetched.uid = email.uid
        fetched.subject = fetched.subject or email.subject
        fetched.sender_name = fetched.sender_name or email.sender_name
        fetched.sender_email = fetched.sender_email or email.sender_email
        fetched.recipients = fetched.recipients or email.recipients
        fetched.message_id = fetched.message_id or email.message_id
        fetched.flags = fetched.flags or email.flags
        if raw.envelope.date is None:
            fetched.date = email.date

        async with db_manager.transaction():
            await db_manager.upsert_email(email.account_id, email.folder_id, fetched)
        return await db_manager.get_email_by_id(email.id)
    except Exception as e:
        log_print(f"Repair of email {email.id} failed: {e}")
        return email
