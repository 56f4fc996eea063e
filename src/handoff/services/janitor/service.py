from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from src.handoff.config import settings
from src.handoff.services.audit.service import AuditLog, audit_log
from src.handoff.services.privacy.timers import LiveSessionRegistry, live_registry
from src.handoff.services.vault.service import SessionVault, session_vault

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    vault_records_purged: int = 0
    audit_logs_purged: int = 0
    live_sessions_purged: int = 0
    live_transitions: Dict[str, List[str]] = Field(default_factory=dict)


class Janitor:
    """Enforces every expiry rule in one idempotent sweep.

    A sweep purges expired vault records, the audit log once it has expired,
    and evaluates every live view (locking or purging those that are due).
    Running it twice in a row changes nothing the second time.
    """

    def __init__(
        self,
        vault: Optional[SessionVault] = None,
        audit: Optional[AuditLog] = None,
        registry: Optional[LiveSessionRegistry] = None,
        interval_ms: Optional[int] = None,
    ) -> None:
        self.vault = vault or session_vault
        self.audit = audit or audit_log
        self.registry = registry or live_registry
        self.interval_ms = interval_ms if interval_ms is not None else settings.janitor_interval_ms
        self._task: Optional[asyncio.Task] = None

    def sweep(self, now: Optional[int] = None) -> SweepReport:
        before = set(self.registry.keys())
        transitions = self.registry.evaluate_all(now)
        purged_live = len(before - set(self.registry.keys()))

        report = SweepReport(
            vault_records_purged=self.vault.purge_expired(all_scopes=True),
            audit_logs_purged=self.audit.purge_expired(all_scopes=True),
            live_sessions_purged=purged_live,
            live_transitions={sid: [e.value for e in events] for sid, events in transitions.items()},
        )
        if report.vault_records_purged or report.audit_logs_purged or report.live_sessions_purged:
            logger.info(
                "janitor sweep: vault=%d audit=%d live=%d",
                report.vault_records_purged,
                report.audit_logs_purged,
                report.live_sessions_purged,
            )
        return report

    def on_visibility_change(self, visible: bool) -> Optional[SweepReport]:
        """Host view became visible again: catch up on anything that expired."""

        if not visible:
            return None
        return self.sweep()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_ms / 1000)
            try:
                self.sweep()
            except Exception:
                logger.exception("janitor sweep failed")

    def start(self) -> bool:
        """Run a sweep now and then every ``interval_ms`` on the running loop."""

        if self.running:
            return False
        self.sweep()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


janitor = Janitor()
