import os
from dataclasses import dataclass, field
from datetime import timedelta

from dotenv import load_dotenv


_here = os.path.dirname(os.path.abspath(__file__))
_backend_root = os.path.dirname(_here)
# Load env from backend/.env without overriding the real environment
load_dotenv(os.path.join(_backend_root, ".env"), override=False)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from the environment.

    Durations are kept in seconds; ``lifetime`` and ``warning_threshold``
    give the sandbox countdown as ``timedelta``. Stored slots must outlive a
    sandbox, so a positive ``storage_ttl_seconds`` has to exceed its lifetime
    (0 disables expiry).
    """

    storage_backend: str = "file"
    storage_dir: str = os.path.join(_backend_root, ".workbench")
    storage_prefix: str = "workbench"
    storage_ttl_seconds: int = 7 * 24 * 60 * 60
    project_root: str = os.getcwd()
    project_name: str = "Generated App"

    sandbox_lifetime_seconds: float = 15 * 60
    sandbox_warning_seconds: float = 2 * 60
    sandbox_poll_seconds: float = 1.0
    sandbox_runtime: str = "node22"
    sandbox_app_port: int = 5173
    sandbox_timeout_ms: int = 15 * 60 * 1000
    sandbox_dev_command: str = "npm run dev -- --host 0.0.0.0"
    sandbox_ready_patterns: tuple[str, ...] = field(
        default=("ready in", "Local:", "localhost:")
    )
    sandbox_call_timeout_seconds: float = 60.0
    sandbox_preview_timeout_seconds: float = 45.0
    auto_recover: bool = False

    layout_file: str = "app/layout.tsx"
    scrape_route_file: str = "app/api/scrape-url-enhanced/route.ts"

    def __post_init__(self) -> None:
        if 0 < self.storage_ttl_seconds <= self.sandbox_lifetime_seconds:
            raise ValueError(
                f"storage TTL ({self.storage_ttl_seconds}s) must exceed the sandbox "
                f"lifetime ({self.sandbox_lifetime_seconds:.0f}s), or be 0 for no expiry"
            )

    @property
    def lifetime(self) -> timedelta:
        return timedelta(seconds=self.sandbox_lifetime_seconds)

    @property
    def warning_threshold(self) -> timedelta:
        return timedelta(seconds=self.sandbox_warning_seconds)

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        patterns = os.getenv("SANDBOX_READY_PATTERNS")
        return cls(
            storage_backend=os.getenv("WORKBENCH_STORAGE_BACKEND", defaults.storage_backend),
            storage_dir=os.getenv("WORKBENCH_STORAGE_DIR", defaults.storage_dir),
            storage_prefix=os.getenv("WORKBENCH_STORAGE_PREFIX", defaults.storage_prefix),
            storage_ttl_seconds=int(os.getenv("RUN_STORE_TTL_SECONDS", str(defaults.storage_ttl_seconds))),
            project_root=os.getenv("WORKBENCH_PROJECT_ROOT", defaults.project_root),
            project_name=os.getenv("WORKBENCH_PROJECT_NAME", defaults.project_name),
            sandbox_lifetime_seconds=_env_float("SANDBOX_LIFETIME_SECONDS", defaults.sandbox_lifetime_seconds),
            sandbox_warning_seconds=_env_float("SANDBOX_WARNING_SECONDS", defaults.sandbox_warning_seconds),
            sandbox_poll_seconds=_env_float("SANDBOX_POLL_SECONDS", defaults.sandbox_poll_seconds),
            sandbox_runtime=os.getenv("SANDBOX_RUNTIME", defaults.sandbox_runtime),
            sandbox_app_port=int(os.getenv("SANDBOX_APP_PORT", str(defaults.sandbox_app_port))),
            sandbox_timeout_ms=int(os.getenv("SANDBOX_TIMEOUT_MS", str(defaults.sandbox_timeout_ms))),
            sandbox_dev_command=os.getenv("SANDBOX_DEV_COMMAND", defaults.sandbox_dev_command),
            sandbox_ready_patterns=(
                tuple(p.strip() for p in patterns.split(",") if p.strip())
                if patterns
                else defaults.sandbox_ready_patterns
            ),
            sandbox_call_timeout_seconds=_env_float(
                "SANDBOX_CALL_TIMEOUT_SECONDS", defaults.sandbox_call_timeout_seconds
            ),
            sandbox_preview_timeout_seconds=_env_float(
                "SANDBOX_PREVIEW_TIMEOUT_SECONDS", defaults.sandbox_preview_timeout_seconds
            ),
            auto_recover=_env_bool("WORKBENCH_AUTO_RECOVER", defaults.auto_recover),
            layout_file=os.getenv("WORKBENCH_LAYOUT_FILE", defaults.layout_file),
            scrape_route_file=os.getenv("WORKBENCH_SCRAPE_ROUTE_FILE", defaults.scrape_route_file),
        )


settings = Settings.from_env()
