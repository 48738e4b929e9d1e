from dataclasses import dataclass, field
from functools import lru_cache

from workbench.config import Settings, settings
from workbench.files import FileCollaborator, LocalFiles
from workbench.persistence.slots import SlotStore, create_slot_store
from workbench.persistence.store import PersistenceStore
from workbench.remediation.executor import RemediationExecutor
from workbench.remediation.rules import build_rules
from workbench.sandbox.lifecycle import ClockStore, LifecycleMonitor
from workbench.sandbox.provider import SandboxFiles, SandboxProvider, VercelSandboxProvider
from workbench.sandbox.recovery import RecoveryCoordinator


@dataclass
class Services:
    settings: Settings
    files: FileCollaborator
    store: PersistenceStore
    executor: RemediationExecutor
    provider: SandboxProvider
    clocks: ClockStore
    monitor: LifecycleMonitor
    recovery: RecoveryCoordinator
    sandbox_executors: dict[str, RemediationExecutor] = field(default_factory=dict)

    def executor_for(self, sandbox_id: str | None) -> RemediationExecutor:
        """Executor patching the live sandbox's files, or the local project."""
        if not sandbox_id:
            return self.executor
        executor = self.sandbox_executors.get(sandbox_id)
        if executor is None:
            files = SandboxFiles(
                self.provider, sandbox_id, timeout=self.settings.sandbox_call_timeout_seconds
            )
            executor = RemediationExecutor(files, self.executor.rules, self.store)
            self.sandbox_executors[sandbox_id] = executor
        return executor


def build_services(
    config: Settings,
    *,
    slots: SlotStore | None = None,
    files: FileCollaborator | None = None,
    provider: SandboxProvider | None = None,
    clocks: ClockStore | None = None,
) -> Services:
    slots = slots or create_slot_store(
        config.storage_backend,
        directory=config.storage_dir,
        namespace=config.storage_prefix,
        ttl_seconds=config.storage_ttl_seconds,
    )
    files = files or LocalFiles(config.project_root)
    provider = provider or VercelSandboxProvider(config)
    store = PersistenceStore(
        slots, prefix=config.storage_prefix, default_project_name=config.project_name
    )
    clocks = clocks or ClockStore(
        slots,
        lifetime=config.lifetime,
        warning_threshold=config.warning_threshold,
        prefix=config.storage_prefix,
    )
    monitor = LifecycleMonitor(clocks, store, poll_interval=config.sandbox_poll_seconds)
    recovery = RecoveryCoordinator(
        store,
        provider,
        monitor,
        call_timeout=config.sandbox_call_timeout_seconds,
        auto_recover=config.auto_recover,
    )
    monitor.subscribe(recovery.handle_event)
    executor = RemediationExecutor(
        files,
        build_rules(layout_file=config.layout_file, scrape_route_file=config.scrape_route_file),
        store,
    )
    return Services(
        settings=config,
        files=files,
        store=store,
        executor=executor,
        provider=provider,
        clocks=clocks,
        monitor=monitor,
        recovery=recovery,
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(settings)
