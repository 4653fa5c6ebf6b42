# config.py - Centralized configuration for the email cache

import os
from dataclasses import dataclass, field

from errors import AccountNotFoundError, ConfigurationError

# --- OAuth2 Configuration (XOAUTH2 accounts only) ---
# SCOPES: Defines the access scope for Google API. Full IMAP access.
SCOPES = ['https://mail.google.com/']

# TOKEN_PATH: Path to the stored OAuth2 token file, created automatically
# when the authorization flow completes for the first time.
TOKEN_PATH = 'token.json'

# CLIENT_SECRET_PATH: Default client secret JSON downloaded from Google Cloud Console.
CLIENT_SECRET_PATH = 'creds.json'

# --- Connection Defaults ---
DEFAULT_IMAP_PORT = 993
DEFAULT_SMTP_PORT = 587

# --- Cache Defaults ---
# DEFAULT_DB_PATH: Default path for the SQLite cache file.
DEFAULT_DB_PATH = 'email_cache.db'

# --- Sync Behavior Configuration ---
# RECENT_FETCH_WINDOW: How many of the most recent messages a folder sync pulls.
# Full historical backfill is not attempted.
RECENT_FETCH_WINDOW = 100

# --- Search Configuration ---
# DEFAULT_SEARCH_RESULT_LIMIT: Used when the caller asks for <= 0 results.
DEFAULT_SEARCH_RESULT_LIMIT = 100
# MAX_SEARCH_RESULT_LIMIT: Hard ceiling, larger requests are clamped.
MAX_SEARCH_RESULT_LIMIT = 1000
# SNIPPET_LENGTH: Characters of plain-text body shown in search results.
SNIPPET_LENGTH = 200

# --- Debugging ---
# DEBUG_MODE: Global flag to enable debug print statements.
# Can be overridden by the --debug command-line argument or LOG_LEVEL=debug.
DEBUG_MODE = False

AUTH_PASSWORD = 'password'
AUTH_XOAUTH2 = 'xoauth2'


@dataclass
class AccountConfig:
    """Connection parameters for one remote mailbox identity."""
    name: str
    imap_host: str
    imap_username: str
    imap_password: str = ''
    imap_port: int = DEFAULT_IMAP_PORT
    smtp_host: str = ''
    smtp_port: int = DEFAULT_SMTP_PORT
    smtp_username: str = ''
    auth_method: str = AUTH_PASSWORD
    client_secret_path: str = CLIENT_SECRET_PATH


@dataclass
class Settings:
    cache_path: str = DEFAULT_DB_PATH
    search_result_limit: int = DEFAULT_SEARCH_RESULT_LIMIT
    log_level: str = 'info'
    accounts: list[AccountConfig] = field(default_factory=list)

    @property
    def debug(self) -> bool:
        return self.log_level.lower() == 'debug'

    def get_account(self, name: str) -> AccountConfig:
        for account in self.accounts:
            if account.name == name:
                return account
        raise AccountNotFoundError(name)

    def account_names(self) -> list[str]:
        return [account.name for account in self.accounts]


def _get_env(environ, key, default=''):
    value = environ.get(key, '')
    return value if value != '' else default


def _get_env_int(environ, key, default):
    value = environ.get(key, '')
    if value:
        try:
            return int(value)
        except ValueError:
            pass
    return default


def _load_account(environ, prefix, default_name=None):
    """Builds an AccountConfig from variables sharing `prefix`, or None if the group is absent."""
    name = _get_env(environ, prefix + 'NAME', default_name or '')
    imap_host = _get_env(environ, prefix + 'IMAP_HOST')
    if not name or not imap_host:
        return None

    imap_username = _get_env(environ, prefix + 'IMAP_USERNAME')
    return AccountConfig(
        name=name,
        imap_host=imap_host,
        imap_port=_get_env_int(environ, prefix + 'IMAP_PORT', DEFAULT_IMAP_PORT),
        imap_username=imap_username,
        imap_password=_get_env(environ, prefix + 'IMAP_PASSWORD'),
        smtp_host=_get_env(environ, prefix + 'SMTP_HOST'),
        smtp_port=_get_env_int(environ, prefix + 'SMTP_PORT', DEFAULT_SMTP_PORT),
        smtp_username=_get_env(environ, prefix + 'SMTP_USERNAME', imap_username),
        auth_method=_get_env(environ, prefix + 'IMAP_AUTH', AUTH_PASSWORD).lower(),
        client_secret_path=_get_env(environ, prefix + 'OAUTH_CLIENT_SECRET', CLIENT_SECRET_PATH),
    )


def load_accounts(environ=None) -> list[AccountConfig]:
    """
    Loads account definitions from the environment.

    A single account is described by IMAP_HOST, IMAP_USERNAME, ... (named by
    ACCOUNT_NAME, default "default"). Otherwise numbered groups ACCOUNT_1_*,
    ACCOUNT_2_*, ... are read until the first group without a NAME.
    """
    environ = os.environ if environ is None else environ

    single = _load_account(environ, '', default_name=_get_env(environ, 'ACCOUNT_NAME', 'default'))
    if single:
        return [single]

    accounts = []
    number = 1
    while True:
        account = _load_account(environ, f'ACCOUNT_{number}_')
        if account is None:
            break
        accounts.append(account)
        number += 1
    return accounts


def load_settings(environ=None) -> Settings:
    environ = os.environ if environ is None else environ
    return Settings(
        cache_path=_get_env(environ, 'CACHE_PATH', DEFAULT_DB_PATH),
        search_result_limit=_get_env_int(environ, 'SEARCH_RESULT_LIMIT', DEFAULT_SEARCH_RESULT_LIMIT),
        log_level=_get_env(environ, 'LOG_LEVEL', 'info'),
        accounts=load_accounts(environ),
    )


def validate_settings(settings: Settings):
    """Raises ConfigurationError describing the first problem found."""
    if not settings.cache_path:
        raise ConfigurationError("CACHE_PATH is required")
    if not 1 <= settings.search_result_limit <= MAX_SEARCH_RESULT_LIMIT:
        raise ConfigurationError(f"SEARCH_RESULT_LIMIT must be between 1 and {MAX_SEARCH_RESULT_LIMIT}")
    if not settings.accounts:
        raise ConfigurationError("at least one account must be configured")

    seen = set()
    for account in settings.accounts:
        if account.name in seen:
            raise ConfigurationError(f"duplicate account name: {account.name}")
        seen.add(account.name)
        if not account.imap_host:
            raise ConfigurationError(f"account {account.name}: IMAP_HOST is required")
        if not account.imap_username:
            raise ConfigurationError(f"account {account.name}: IMAP_USERNAME is required")
        if not 1 <= account.imap_port <= 65535:
            raise ConfigurationError(f"account {account.name}: invalid IMAP_PORT")
        if account.smtp_host and not 1 <= account.smtp_port <= 65535:
            raise ConfigurationError(f"account {account.name}: invalid SMTP_PORT")
        if account.auth_method not in (AUTH_PASSWORD, AUTH_XOAUTH2):
            raise ConfigurationError(f"account {account.name}: unsupported IMAP_AUTH '{account.auth_method}'")
        if account.auth_method == AUTH_PASSWORD and not account.imap_password:
            raise ConfigurationError(f"account {account.name}: IMAP_PASSWORD is required")
