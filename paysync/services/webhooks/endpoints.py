from __future__ import annotations

from dataclasses import dataclass
import logging
import zlib

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysync.db.models import ManagedWebhook
from paysync.logging_utils import structured_log
from paysync.services.accounts import AccountResolver
from paysync.services.stripe.source import ObjectSource
from paysync.services.sync.event_routes import EventRouteTable

logger = logging.getLogger(__name__)

MANAGED_WEBHOOK_LOCK_NAMESPACE = 7201


@dataclass(frozen=True)
class ManagedWebhookRecord:
    id: int
    account_id: str
    url: str
    platform_webhook_id: str
    enabled_events: list[str]
    created: bool


def _lock_key(account_id: str, url: str) -> int:
    value = zlib.crc32(f"{account_id}:{url}".encode("utf-8"))
    return value - 2**32 if value >= 2**31 else value


def _record(row: ManagedWebhook, *, created: bool) -> ManagedWebhookRecord:
    return ManagedWebhookRecord(
        id=int(row.id),
        account_id=row.account_id,
        url=row.url,
        platform_webhook_id=row.platform_webhook_id,
        enabled_events=list(row.enabled_events or []),
        created=created,
    )


async def _acquire_webhook_lock(db_session: AsyncSession, *, account_id: str, url: str) -> None:
    await db_session.execute(
        text("SELECT pg_advisory_xact_lock(:namespace, :lock_key)"),
        {
            "namespace": MANAGED_WEBHOOK_LOCK_NAMESPACE,
            "lock_key": _lock_key(account_id, url),
        },
    )


async def _load_webhook(db_session: AsyncSession, *, account_id: str, url: str) -> ManagedWebhook | None:
    result = await db_session.execute(
        select(ManagedWebhook).where(ManagedWebhook.account_id == account_id, ManagedWebhook.url == url)
    )
    return result.scalar_one_or_none()


class ManagedWebhookService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        source: ObjectSource,
        accounts: AccountResolver,
        routes: EventRouteTable,
    ) -> None:
        self._session_factory = session_factory
        self._source = source
        self._accounts = accounts
        self._routes = routes

    async def find_or_create(self, url: str) -> ManagedWebhookRecord:
        """Return the endpoint registered for `url`, creating it on the platform once.

        Concurrent callers serialize on an advisory transaction lock; the
        `(account_id, url)` unique constraint catches anything that slips past.
        """
        clean_url = url.strip()
        if not clean_url:
            raise ValueError("Webhook url must not be empty.")
        account_id = await self._accounts.resolve()
        async with self._session_factory() as session:
            await _acquire_webhook_lock(session, account_id=account_id, url=clean_url)
            existing = await _load_webhook(session, account_id=account_id, url=clean_url)
            if existing is not None:
                await session.commit()
                return _record(existing, created=False)

            enabled_events = self._routes.event_types()
            endpoint = await self._source.create_webhook_endpoint(clean_url, enabled_events)
            row = ManagedWebhook(
                account_id=account_id,
                url=clean_url,
                platform_webhook_id=str(endpoint["id"]),
                secret=endpoint.get("secret"),
                enabled_events=enabled_events,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                structured_log(
                    logger,
                    "warning",
                    "webhooks.managed_create_raced",
                    account_id=account_id,
                    url=clean_url,
                    platform_webhook_id=endpoint.get("id"),
                )
                winner = await _load_webhook(session, account_id=account_id, url=clean_url)
                if winner is None:
                    raise
                return _record(winner, created=False)
            await session.refresh(row)

        structured_log(
            logger,
            "info",
            "webhooks.managed_created",
            account_id=account_id,
            url=clean_url,
            platform_webhook_id=row.platform_webhook_id,
            event_count=len(enabled_events),
        )
        return _record(row, created=True)
