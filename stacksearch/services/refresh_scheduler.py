from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Callable

from stacksearch.core.config import Settings, get_settings
from stacksearch.core.errors import AuthenticationError
from stacksearch.core.logging import mask_key
from stacksearch.persistence.repos.credentials import CredentialStore
from stacksearch.services.credentials import StackCredentialManager, utcnow
from stacksearch.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass
class RefreshSweepResult:
    total: int = 0
    refreshed: int = 0
    failed: int = 0
    purged: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "refreshed": self.refreshed,
            "failed": self.failed,
            "purged": self.purged,
            "errors": list(self.errors),
        }


class RefreshScheduler:
    """Periodic sweep that keeps stored credentials ahead of expiry."""

    def __init__(
        self,
        manager: StackCredentialManager,
        store: CredentialStore,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._manager = manager
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock or utcnow
        self._task: asyncio.Task | None = None
        self._sweep_lock = asyncio.Lock()
        self._last_run_at: datetime | None = None
        self._last_result: RefreshSweepResult | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_sweep(self) -> RefreshSweepResult:
        # Overlapping sweeps would double-refresh; a second caller waits and reuses the lock.
        async with self._sweep_lock:
            result = await self._sweep()
            self._last_run_at = self._clock()
            self._last_result = result
            return result

    async def _sweep(self) -> RefreshSweepResult:
        now = self._clock()
        margin_cutoff = now + timedelta(seconds=self._settings.credential_refresh_margin_s)
        grace_cutoff = now - timedelta(seconds=self._settings.credential_grace_window_s)
        candidates = await self._store.list_refresh_candidates(
            margin_cutoff=margin_cutoff, grace_cutoff=grace_cutoff
        )
        result = RefreshSweepResult(total=len(candidates))
        for record in candidates:
            key = record.stack_api_key
            try:
                await self._manager.refresh(key, force=True)
                result.refreshed += 1
            except AuthenticationError as exc:
                # The manager already marked the credential inactive.
                result.failed += 1
                result.errors.append({"stack_api_key": mask_key(key), "error": str(exc)})
                logger.warning("credential_sweep_rejected stack=%s", mask_key(key))
            except Exception as exc:  # noqa: BLE001 - one tenant must not stop the sweep
                result.failed += 1
                result.errors.append({"stack_api_key": mask_key(key), "error": str(exc)})
                logger.warning("credential_sweep_failed stack=%s error=%s", mask_key(key), exc)

        retention_cutoff = now - timedelta(days=self._settings.credential_retention_days)
        try:
            result.purged = await self._store.purge_inactive(retention_cutoff)
        except Exception as exc:  # noqa: BLE001 - purge is housekeeping; refresh results still count
            logger.warning("credential_purge_failed error=%s", exc)

        increment_counter("credential_sweeps_total")
        set_gauge("credential_sweep_last_failed", float(result.failed))
        logger.info(
            "credential_sweep_completed total=%s refreshed=%s failed=%s purged=%s",
            result.total,
            result.refreshed,
            result.failed,
            result.purged,
        )
        return result

    async def run_forever(self) -> None:
        interval_s = max(1, int(self._settings.credential_refresh_interval_s))
        while True:
            try:
                await self.run_sweep()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep the scheduler alive while surfacing failures in logs
                logger.exception("credential sweep failed")
            await asyncio.sleep(interval_s)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run_forever(), name="credential_refresh_scheduler")
        logger.info("credential_scheduler_started interval_s=%s", self._settings.credential_refresh_interval_s)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("credential_scheduler_stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "interval_s": self._settings.credential_refresh_interval_s,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "last_result": self._last_result.as_dict() if self._last_result else None,
        }
