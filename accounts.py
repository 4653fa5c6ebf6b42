from config import AccountConfig
from errors import AccountNotFoundError
from imap_client import ImapClient
from utils import debug_print, log_print


class AccountRegistry:
    """
    Owns one IMAP session handle per configured account.

    Handles are created at registration but connect lazily on first use.
    """

    def __init__(self, client_factory=ImapClient):
        self.client_factory = client_factory
        self._clients: dict[str, ImapClient] = {}
        # Handles replaced by a re-registration, logged out by close_all
        self._stale: list[ImapClient] = []

    def register(self, account: AccountConfig):
        existing = self._clients.get(account.name)
        if existing is not None:
            if existing.account == account:
                return existing
            self._stale.append(existing)
        client = self.client_factory(account)
        self._clients[account.name] = client
        debug_print(f"Registered account {account.name} ({account.imap_username}@{account.imap_host})")
        return client

    def get(self, name: str):
        try:
            return self._clients[name]
        except KeyError:
            raise AccountNotFoundError(name) from None

    def get_config(self, name: str) -> AccountConfig:
        return self.get(name).account

    def names(self) -> list[str]:
        return list(self._clients)

    def configs(self) -> list[AccountConfig]:
        return [client.account for client in self._clients.values()]

    def __contains__(self, name):
        return name in self._clients

    def __len__(self):
        return len(self._clients)

    async def close_all(self):
        """Log out of every session. Failures are logged, never raised. Safe to call twice."""
        clients = self._stale + list(self._clients.values())
        self._stale = []
        for client in clients:
            try:
                await client.close()
            except Exception as e:
                log_print(f"Error closing session for account {client.name}: {e}")
