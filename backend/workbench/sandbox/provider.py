import asyncio
import base64
import logging
import shlex
from typing import Any, Awaitable, Protocol, TypeVar

import httpx
from vercel.sandbox import AsyncSandbox as Sandbox

from workbench.config import Settings
from workbench.errors import SandboxProviderError
from workbench.files import normalize_path
from workbench.models import ProjectFile


logger = logging.getLogger("workbench.sandbox.provider")

T = TypeVar("T")

WRITE_CHUNK_SIZE = 64
WRITE_RETRIES = 3


class SandboxProvider(Protocol):
    async def create_sandbox(self) -> str: ...

    async def apply_files(
        self, sandbox_id: str, files: list[ProjectFile], packages: list[str]
    ) -> int: ...

    async def restart_preview(self, sandbox_id: str) -> str | None: ...

    async def read_file(self, sandbox_id: str, path: str) -> str: ...

    async def write_file(self, sandbox_id: str, path: str, content: str) -> None: ...

    async def stop(self, sandbox_id: str) -> None: ...


async def bounded(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """Await with a deadline, turning a hang into a SandboxProviderError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise SandboxProviderError(f"{what} timed out after {timeout:g}s") from e


async def probe_url(url: str, timeout: float = 8.0) -> int | None:
    """Return the HTTP status of url, or None if it cannot be reached.

    Tries HEAD first; some dev servers reject HEAD, so fall back to a
    streamed GET that never reads the body.
    """
    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
            try:
                resp = await client.request("HEAD", url)
                return int(resp.status_code)
            except httpx.HTTPError:
                async with client.stream("GET", url) as resp2:
                    return int(resp2.status_code)
    except httpx.HTTPError as e:
        logger.debug("probe %s failed: %s", url, str(e))
        return None


def _to_payload(files: list[ProjectFile]) -> list[dict[str, Any]]:
    payload: list[dict[str, Any]] = []
    for f in files:
        p = normalize_path(f.path)
        if not p:
            continue
        payload.append({"path": p, "content": f.content.encode("utf-8")})
    return payload


class VercelSandboxProvider:
    """Sandbox provisioning backed by Vercel Sandbox."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._cache: dict[str, Sandbox] = {}
        self._preview_cmds: dict[str, Any] = {}

    async def _get(self, sandbox_id: str) -> Sandbox:
        if sandbox_id in self._cache:
            return self._cache[sandbox_id]
        try:
            fetched = await Sandbox.get(sandbox_id=sandbox_id)
        except Exception as e:
            raise SandboxProviderError(f"Sandbox {sandbox_id} unavailable: {e}") from e
        self._cache[sandbox_id] = fetched
        return fetched

    async def create_sandbox(self) -> str:
        try:
            sandbox = await Sandbox.create(
                timeout=self.settings.sandbox_timeout_ms,
                runtime=self.settings.sandbox_runtime,
                ports=[self.settings.sandbox_app_port],
            )
        except Exception as e:
            raise SandboxProviderError(f"Sandbox creation failed: {e}") from e
        self._cache[sandbox.sandbox_id] = sandbox
        logger.info("created sandbox %s", sandbox.sandbox_id)
        return sandbox.sandbox_id

    async def _write_chunks(self, sandbox: Sandbox, payload: list[dict[str, Any]]) -> None:
        for i in range(0, len(payload), WRITE_CHUNK_SIZE):
            chunk = payload[i : i + WRITE_CHUNK_SIZE]
            attempt = 0
            while True:
                try:
                    await sandbox.write_files(chunk)
                    break
                except Exception as e:
                    attempt += 1
                    if attempt > WRITE_RETRIES:
                        raise SandboxProviderError(f"File sync failed: {e}") from e
                    logger.warning(
                        "retrying file sync (%d/%d) due to error: %s", attempt, WRITE_RETRIES, str(e)
                    )
                    await asyncio.sleep(0.25 * (2 ** (attempt - 1)))

    async def _run(self, sandbox: Sandbox, script: str, label: str) -> None:
        cmd = await sandbox.run_command_detached(
            "bash", ["-lc", f"cd {sandbox.sandbox.cwd} && {script}"]
        )
        async for line in cmd.logs():
            logger.debug("%s: %s", label, line.data.rstrip())
        done = await cmd.wait()
        if done.exit_code != 0:
            raise SandboxProviderError(f"{label} failed (exit {done.exit_code})")

    async def apply_files(
        self, sandbox_id: str, files: list[ProjectFile], packages: list[str]
    ) -> int:
        sandbox = await self._get(sandbox_id)
        payload = _to_payload(files)
        if payload:
            await self._write_chunks(sandbox, payload)
        if packages:
            args = " ".join(shlex.quote(p) for p in packages)
            await self._run(sandbox, f"npm install --loglevel info {args}", "npm install")
        logger.info(
            "applied %d files and %d packages to sandbox %s", len(payload), len(packages), sandbox_id
        )
        return len(payload)

    async def restart_preview(self, sandbox_id: str) -> str | None:
        sandbox = await self._get(sandbox_id)
        self._preview_cmds.pop(sandbox_id, None)
        await sandbox.run_command("bash", ["-lc", "pkill -f 'vite|next dev|npm run dev' || true"])

        cmd = await sandbox.run_command_detached(
            "bash",
            ["-lc", f"cd {sandbox.sandbox.cwd} && {self.settings.sandbox_dev_command}"],
        )
        self._preview_cmds[sandbox_id] = cmd

        async def _wait_ready() -> None:
            async for line in cmd.logs():
                logger.debug("preview: %s", line.data.rstrip())
                if any(p in line.data for p in self.settings.sandbox_ready_patterns):
                    return
            raise SandboxProviderError("Preview process exited before it was ready")

        await bounded(
            _wait_ready(), self.settings.sandbox_preview_timeout_seconds, "Preview startup"
        )
        url = sandbox.domain(self.settings.sandbox_app_port)
        status = await probe_url(url)
        if status is None:
            logger.warning("preview %s did not answer the readiness probe", url)
        return url

    async def read_file(self, sandbox_id: str, path: str) -> str:
        sandbox = await self._get(sandbox_id)
        safe = shlex.quote(normalize_path(path))
        cmd = await sandbox.run_command(
            "bash",
            [
                "-lc",
                f"cd {sandbox.sandbox.cwd} && if [ -f {safe} ]; then base64 {safe}; else echo '__MISSING__'; fi",
            ],
        )
        out = (await cmd.stdout() or "").strip()
        if out == "__MISSING__":
            raise FileNotFoundError(path)
        return base64.b64decode(out).decode("utf-8")

    async def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        sandbox = await self._get(sandbox_id)
        await sandbox.write_files(
            [{"path": normalize_path(path), "content": content.encode("utf-8")}]
        )

    async def stop(self, sandbox_id: str) -> None:
        sandbox = self._cache.pop(sandbox_id, None) or await self._get(sandbox_id)
        self._cache.pop(sandbox_id, None)
        self._preview_cmds.pop(sandbox_id, None)
        try:
            await sandbox.stop()
        finally:
            try:
                await sandbox.client.aclose()
            except Exception as e:
                logger.debug("client close failed for %s: %s", sandbox_id, str(e))


class SandboxFiles:
    """FileCollaborator over the files of one live sandbox."""

    def __init__(self, provider: SandboxProvider, sandbox_id: str, timeout: float = 60.0):
        self.provider = provider
        self.sandbox_id = sandbox_id
        self.timeout = timeout

    async def read(self, path: str) -> str:
        return await bounded(
            self.provider.read_file(self.sandbox_id, path), self.timeout, f"Reading {path}"
        )

    async def write(self, path: str, content: str) -> None:
        await bounded(
            self.provider.write_file(self.sandbox_id, path, content), self.timeout, f"Writing {path}"
        )
