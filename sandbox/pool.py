"""
Sandbox pool: at most one live E2B sandbox per (session_id, mode).

Sandboxes are created lazily on the first ``acquire()`` for a key and
reused for every later turn of that session. Creation is single-flight:
concurrent acquires for the same key (e.g. a double-submitted request)
wait on a per-key lock and receive the same handle.

To avoid cold-start cost each mode may name a pre-baked E2B template
(see ``config.SANDBOX_TEMPLATES``). Without one, the spinel mode installs
its package manifest on demand before first use.

Sandboxes are torn down only by ``release()``, ``release_session()``,
idle reaping or ``shutdown()``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from e2b_code_interpreter import AsyncSandbox

import config
from agent.logging import tagged
from agent.turn_limits import get_limit
from knowledge.skills_source import SkillSource, get_skill_source

from .handle import SandboxHandle

logger = logging.getLogger("spinel")

SandboxFactory = Callable[[Optional[str]], Awaitable[Any]]
SecretsProvider = Callable[[str], dict]

PoolKey = tuple[str, str]


class SandboxCreationError(RuntimeError):
    """The remote sandbox for a key could not be created."""


async def create_e2b_sandbox(template: str | None) -> AsyncSandbox:
    """Default factory: a fresh E2B code-interpreter sandbox."""
    kwargs: dict[str, Any] = {
        "api_key": config.get_api_key("e2b"),
        "timeout": config.SANDBOX_LIFETIME_SECONDS,
    }
    if template:
        kwargs["template"] = template
    return await AsyncSandbox.create(**kwargs)


def default_secrets(mode: str) -> dict:
    """Environment variables injected into a fresh sandbox for *mode*."""
    if mode == "spinel":
        mp_key = config.get_api_key("mp")
        if mp_key:
            return {"MP_API_KEY": mp_key}
    return {}


def build_install_script(packages: list[str]) -> str:
    """Python that pip-installs every package not already importable."""
    package_list = ",\n".join(f"    {json.dumps(p)}" for p in packages)
    return f"""
import subprocess, sys
packages = [
{package_list},
]
for pkg in packages:
    try:
        __import__(pkg.replace("-", "_").replace(".", "_"))
    except ImportError:
        subprocess.check_call([sys.executable, "-m", "pip", "install", "-q", pkg])
print("Spinel packages ready")
"""


def build_env_script(secrets: dict) -> str:
    lines = ["import os"]
    for name, value in secrets.items():
        lines.append(f"os.environ[{json.dumps(name)}] = {json.dumps(value)}")
    return "\n".join(lines)


class SandboxPool:
    """Keyed cache of SandboxHandles with single-flight creation.

    Args:
        sandbox_factory: ``async (template) -> sandbox``. Defaults to E2B.
        templates: Mode → template ID (None = default image + on-demand setup).
        secrets: ``(mode) -> {ENV_NAME: value}`` injected after creation.
        skill_source: Source of the spinel package manifest.
        exec_timeout: Per-execution timeout handed to every handle.
        setup_timeout: Timeout for the on-demand package install.
    """

    def __init__(
        self,
        sandbox_factory: SandboxFactory | None = None,
        *,
        templates: dict[str, str | None] | None = None,
        secrets: SecretsProvider | None = None,
        skill_source: SkillSource | None = None,
        exec_timeout: float | None = None,
        setup_timeout: float | None = None,
    ):
        self._factory = sandbox_factory or create_e2b_sandbox
        self._templates = templates if templates is not None else dict(config.SANDBOX_TEMPLATES)
        self._secrets = secrets or default_secrets
        self._skill_source = skill_source
        self._exec_timeout = exec_timeout
        self._setup_timeout = (
            setup_timeout if setup_timeout is not None else get_limit("sandbox.setup_timeout")
        )
        self._handles: dict[PoolKey, SandboxHandle] = {}
        # Per-key creation locks, dropped once no task holds or awaits them
        self._locks: dict[PoolKey, asyncio.Lock] = {}
        self._lock_usage_count: dict[PoolKey, int] = {}
        self._reaper_task: Optional[asyncio.Task] = None
        self.created_count = 0

    # ---- Lookup ----

    def get(self, session_id: str, mode: str) -> SandboxHandle | None:
        return self._handles.get((session_id, mode))

    def keys(self) -> list[PoolKey]:
        return list(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    @property
    def active_locks_count(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def _key_lock(self, key: PoolKey) -> AsyncIterator[None]:
        """Hold the creation lock for *key*; the entry goes away with its last user."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._lock_usage_count[key] = 0
        self._lock_usage_count[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_usage_count[key] -= 1
            if self._lock_usage_count[key] <= 0:
                self._locks.pop(key, None)
                self._lock_usage_count.pop(key, None)

    # ---- Acquire / release ----

    async def acquire(self, session_id: str, mode: str) -> SandboxHandle:
        """Return the handle for (session_id, mode), creating it on first use."""
        key = (session_id, mode)
        handle = self._handles.get(key)
        if handle is not None:
            handle.touch()
            return handle

        async with self._key_lock(key):
            # Another acquire may have finished creation while we waited
            handle = self._handles.get(key)
            if handle is not None:
                handle.touch()
                return handle
            handle = await self._create(session_id, mode)
            self._handles[key] = handle
            return handle

    async def _create(self, session_id: str, mode: str) -> SandboxHandle:
        template = self._templates.get(mode)
        logger.info(
            "Creating sandbox for %s/%s (template=%s)",
            session_id, mode, template or "default",
            extra=tagged("sandbox"),
        )
        try:
            sandbox = await self._factory(template)
        except Exception as e:
            raise SandboxCreationError(
                f"Failed to create sandbox for mode {mode!r}: {e}"
            ) from e
        self.created_count += 1

        handle = SandboxHandle(session_id, mode, sandbox, exec_timeout=self._exec_timeout)
        try:
            if not template and mode == "spinel":
                await self._install_packages(handle)
            secrets = self._secrets(mode)
            if secrets:
                outcome = await handle.execute(build_env_script(secrets))
                if outcome.error:
                    logger.warning(
                        "Secret injection failed for %s/%s: %s",
                        session_id, mode, outcome.error,
                        extra=tagged("sandbox"),
                    )
        except BaseException:
            await handle.close()
            raise
        return handle

    async def _install_packages(self, handle: SandboxHandle) -> None:
        source = self._skill_source or get_skill_source()
        packages = await source.aget_package_list()
        outcome = await handle.execute(
            build_install_script(packages), timeout=self._setup_timeout
        )
        if outcome.error:
            # The sandbox is still usable; missing packages surface as
            # ImportErrors the model can react to.
            logger.warning(
                "On-demand package install failed: %s", outcome.error,
                extra=tagged("sandbox"),
            )
        else:
            logger.info("Installed %d packages on demand", len(packages), extra=tagged("sandbox"))

    async def release(self, session_id: str, mode: str) -> bool:
        """Tear down the sandbox for the key. Returns False if none existed."""
        key = (session_id, mode)
        async with self._key_lock(key):
            handle = self._handles.pop(key, None)
        if handle is None:
            return False
        await handle.close()
        return True

    async def release_session(self, session_id: str) -> int:
        """Release every mode's sandbox for *session_id*. Returns the count."""
        released = 0
        for sid, mode in self.keys():
            if sid == session_id and await self.release(sid, mode):
                released += 1
        return released

    # ---- Idle cleanup ----

    async def reap_idle(self, max_idle_seconds: float) -> list[PoolKey]:
        """Release sandboxes idle for longer than *max_idle_seconds*.

        Handles currently borrowed by an agent run are skipped.
        """
        stale = [
            key for key, handle in self._handles.items()
            if handle.idle_seconds > max_idle_seconds and not handle.in_use
        ]
        reaped = []
        for session_id, mode in stale:
            if await self.release(session_id, mode):
                reaped.append((session_id, mode))
        if reaped:
            logger.info("Reaped %d idle sandbox(es)", len(reaped), extra=tagged("sandbox"))
        return reaped

    def start_reaper(
        self, idle_timeout: float | None = None, interval: float | None = None
    ) -> None:
        """Start a background task that periodically reaps idle sandboxes."""
        if self._reaper_task is not None and not self._reaper_task.done():
            return
        idle_timeout = idle_timeout if idle_timeout is not None else config.SANDBOX_IDLE_TIMEOUT_SECONDS
        interval = interval if interval is not None else config.SANDBOX_REAP_INTERVAL_SECONDS
        self._reaper_task = asyncio.create_task(self._reaper_loop(idle_timeout, interval))

    async def stop_reaper(self) -> None:
        if self._reaper_task:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

    async def _reaper_loop(self, idle_timeout: float, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap_idle(idle_timeout)
            except Exception as e:
                logger.warning("Idle reap failed: %s", e, extra=tagged("sandbox"))

    # ---- Shutdown ----

    async def shutdown(self) -> None:
        """Release all sandboxes (called on server shutdown)."""
        await self.stop_reaper()
        for session_id, mode in self.keys():
            await self.release(session_id, mode)
