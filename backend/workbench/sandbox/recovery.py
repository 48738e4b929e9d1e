import asyncio
import logging
from typing import Any, Awaitable

from workbench.errors import PersistenceReadFailure, PersistenceWriteFailure, RecoveryStepFailure
from workbench.models import (
    LifecycleEvent,
    LifecycleState,
    ProjectFile,
    RecoveryReport,
    RecoveryStep,
)
from workbench.persistence.store import PersistenceStore
from workbench.sandbox.lifecycle import LifecycleMonitor
from workbench.sandbox.provider import SandboxProvider, bounded


logger = logging.getLogger("workbench.sandbox.recovery")


class RecoveryCoordinator:
    """Moves a saved project onto a fresh sandbox.

    Steps run in order and stop at the first failure, except the preview
    restart: once files are restored, a failed restart is reported as a
    warning on an otherwise successful recovery. A recovery in flight is not
    cancelled when its caller goes away.
    """

    def __init__(
        self,
        store: PersistenceStore,
        provider: SandboxProvider,
        monitor: LifecycleMonitor | None = None,
        *,
        call_timeout: float = 60.0,
        auto_recover: bool = False,
    ):
        self.store = store
        self.provider = provider
        self.monitor = monitor
        self.call_timeout = call_timeout
        self.auto_recover = auto_recover
        self.pending_events: dict[str, LifecycleEvent] = {}
        self._lock = asyncio.Lock()

    async def _step(self, step: RecoveryStep, report: RecoveryReport, awaitable: Awaitable[Any]) -> Any:
        try:
            result = await bounded(awaitable, self.call_timeout, step.value)
        except Exception as e:
            raise RecoveryStepFailure(
                step.value, str(e), [s.value for s in report.completed_steps]
            ) from e
        report.completed_steps.append(step)
        return result

    async def _restart_preview(self, sandbox_id: str, report: RecoveryReport) -> None:
        try:
            report.preview_url = await self._step(
                RecoveryStep.RESTART_PREVIEW, report, self.provider.restart_preview(sandbox_id)
            )
        except RecoveryStepFailure as e:
            logger.warning("preview restart failed for %s: %s", sandbox_id, e.reason)
            report.warnings.append(f"Files restored, but the preview restart failed: {e.reason}")

    @staticmethod
    def _failed(report: RecoveryReport, failure: RecoveryStepFailure) -> RecoveryReport:
        report.ok = False
        report.failed_step = RecoveryStep(failure.step)
        report.error = failure.reason
        return report

    async def recover(self, sandbox_id: str | None) -> RecoveryReport:
        return await asyncio.shield(self._recover(sandbox_id))

    async def _recover(self, sandbox_id: str | None) -> RecoveryReport:
        async with self._lock:
            report = RecoveryReport(ok=False, old_sandbox_id=sandbox_id)
            logger.info("recovering project from sandbox %s", sandbox_id)
            try:
                try:
                    snapshot = await self.store.load()
                except PersistenceReadFailure as e:
                    raise RecoveryStepFailure(RecoveryStep.LOAD_SNAPSHOT.value, str(e)) from e
                if snapshot is None:
                    raise RecoveryStepFailure(
                        RecoveryStep.LOAD_SNAPSHOT.value, "No saved project to restore"
                    )
                report.completed_steps.append(RecoveryStep.LOAD_SNAPSHOT)

                new_id = await self._step(
                    RecoveryStep.CREATE_SANDBOX, report, self.provider.create_sandbox()
                )
                report.new_sandbox_id = new_id

                await self._step(
                    RecoveryStep.APPLY_FILES,
                    report,
                    self.provider.apply_files(new_id, snapshot.files, snapshot.packages),
                )
                report.files_restored = len(snapshot.files)
                report.packages_restored = len(snapshot.packages)
            except RecoveryStepFailure as failure:
                logger.error("recovery of %s failed: %s", sandbox_id, str(failure))
                return self._failed(report, failure)

            await self._restart_preview(new_id, report)
            report.ok = True

            try:
                await self.store.set_sandbox(new_id)
            except PersistenceWriteFailure as e:
                report.warnings.append(f"Could not record the new sandbox id: {e}")
            if sandbox_id:
                self.pending_events.pop(sandbox_id, None)
            if self.monitor is not None:
                await self.monitor.watch(new_id)
                if sandbox_id:
                    self.monitor.forget(sandbox_id)

            logger.info(
                "recovered %d files and %d packages into sandbox %s",
                report.files_restored,
                report.packages_restored,
                new_id,
            )
            return report

    async def restore(
        self, sandbox_id: str, files: list[ProjectFile], packages: list[str]
    ) -> RecoveryReport:
        """Apply a file set to an existing sandbox and restart its preview."""
        report = RecoveryReport(ok=False, old_sandbox_id=sandbox_id, new_sandbox_id=sandbox_id)
        try:
            await self._step(
                RecoveryStep.APPLY_FILES,
                report,
                self.provider.apply_files(sandbox_id, files, packages),
            )
        except RecoveryStepFailure as failure:
            logger.error("restore into %s failed: %s", sandbox_id, str(failure))
            return self._failed(report, failure)
        report.files_restored = len(files)
        report.packages_restored = len(packages)
        await self._restart_preview(sandbox_id, report)
        report.ok = True
        return report

    async def handle_event(self, event: LifecycleEvent) -> None:
        if event.state is LifecycleState.WARNING:
            logger.warning(
                "sandbox %s expires in %.0fs", event.sandbox_id, event.remaining_seconds
            )
            return
        if event.state is not LifecycleState.EXPIRED:
            return
        self.pending_events[event.sandbox_id] = event
        if not self.auto_recover:
            logger.warning("sandbox %s expired; waiting for a recovery request", event.sandbox_id)
            return
        report = await self.recover(event.sandbox_id)
        if not report.ok:
            logger.error(
                "automatic recovery of %s stopped at %s: %s",
                event.sandbox_id,
                report.failed_step.value if report.failed_step else "?",
                report.error,
            )
