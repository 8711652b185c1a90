"""Account registry for the Ledger worker bot.

Maps an account's auth token to the numeric account id the remote returns
from the identity endpoint.  Entries are written once, after the first
successful identity fetch, and only read afterwards (log context, heartbeat
paths).  All access happens on the event loop thread, so a plain dict with
single-key inserts needs no further synchronisation.

Usage::

    from core.registry import AccountRegistry

    registry = AccountRegistry()
    registry.register(token, 12345)
    registry.get(token)  # -> "12345"
"""

import logging
from typing import Dict, Iterator, Optional, Union

logger = logging.getLogger(__name__)


class AccountRegistry:
    """Write-once ``token -> account id`` map."""

    def __init__(self) -> None:
        self._ids: Dict[str, str] = {}

    def register(self, token: str, account_id: Union[str, int]) -> str:
        """Record *account_id* for *token* unless one is already known.

        A second registration never overwrites the first; a conflicting id
        is logged and ignored.

        Returns:
            The id stored for *token* after the call.
        """
        account_id = str(account_id)
        existing = self._ids.setdefault(token, account_id)
        if existing != account_id:
            logger.warning(
                "Ignoring new account id %s: token already registered as %s",
                account_id, existing,
            )
        return existing

    def get(self, token: str) -> Optional[str]:
        return self._ids.get(token)

    def __contains__(self, token: object) -> bool:
        return token in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)
