from __future__ import annotations

import asyncio
import logging

from paysync.logging_utils import structured_log
from paysync.services.stripe.source import ObjectSource
from paysync.services.sync.repository import SyncStateRepository

logger = logging.getLogger(__name__)


class AccountResolver:
    """Resolves the platform account this process syncs and ensures its row exists."""

    def __init__(
        self,
        repository: SyncStateRepository,
        source: ObjectSource,
        *,
        account_id: str | None = None,
    ) -> None:
        self._repository = repository
        self._source = source
        self._configured_account_id = (account_id or "").strip() or None
        self._account_id: str | None = None
        self._lock = asyncio.Lock()

    async def resolve(self) -> str:
        if self._account_id is not None:
            return self._account_id
        async with self._lock:
            if self._account_id is not None:
                return self._account_id
            if self._configured_account_id is not None:
                account_id = self._configured_account_id
                await self._repository.ensure_account(account_id)
            else:
                account = await self._source.get_account()
                account_id = str(account["id"])
                await self._repository.ensure_account(account_id, raw_data=account)
            structured_log(logger, "info", "accounts.resolved", account_id=account_id)
            self._account_id = account_id
            return account_id
