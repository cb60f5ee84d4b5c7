from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from starterauth.logging import get_logger
from starterauth.service.auth import CredentialStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class SweepReport:
    users_deleted: int
    refresh_tokens_deleted: int


class UnconfirmedAccountSweeper:
    """Delete accounts whose confirmation window lapsed, plus dead refresh tokens."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def sweep(self, *, now: Optional[datetime] = None) -> SweepReport:
        current = now or datetime.now(timezone.utc)
        logger.info("unconfirmed_sweep_started")
        users_deleted = self.store.delete_unconfirmed_expired(now=current)
        tokens_deleted = self.store.delete_expired_refresh_tokens(now=current)
        logger.info(
            "unconfirmed_sweep_finished",
            users_deleted=users_deleted,
            refresh_tokens_deleted=tokens_deleted,
        )
        return SweepReport(users_deleted=users_deleted, refresh_tokens_deleted=tokens_deleted)


async def run_sweeper(sweeper: UnconfirmedAccountSweeper, interval_seconds: int) -> None:
    """Background loop that sweeps on a fixed interval until cancelled."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                await asyncio.to_thread(sweeper.sweep)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("unconfirmed_sweep_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("unconfirmed_sweep_task_cancelled")
