"""
Fetches and caches the Spinel skill document and package manifest.

Two plain-text resources are read from the skills repository:
- ``SKILL.md``: materials-science skill instructions (YAML frontmatter stripped)
- ``setup.py``: parsed for its ``REQUIREMENTS = [...]`` list

Each is cached in memory with its own TTL and falls back to the embedded
copy in ``knowledge/fallbacks.py`` on network error, non-2xx status or
parse failure. Fallback values are not cached, so the next call retries.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

import requests

import config
from agent.logging import tagged
from agent.turn_limits import get_limit

from .fallbacks import FALLBACK_PACKAGES, FALLBACK_SKILL_CONTENT

logger = logging.getLogger("spinel")

T = TypeVar("T")

_FRONTMATTER_RE = re.compile(r"^---\r?\n[\s\S]*?\r?\n---\r?\n")
_REQUIREMENTS_RE = re.compile(r"REQUIREMENTS\s*=\s*\[([\s\S]*?)\]")
_VERSION_SPEC_RE = re.compile(r"[><=!~].*$")


class ManifestParseError(ValueError):
    """setup.py did not contain a usable REQUIREMENTS list."""


@dataclass
class _CacheEntry(Generic[T]):
    value: T
    fetched_at: float


def strip_frontmatter(md: str) -> str:
    """Remove a leading ``---`` YAML frontmatter block, if present."""
    match = _FRONTMATTER_RE.match(md)
    if match:
        return md[match.end():].lstrip()
    return md


def parse_requirements(setup_py: str) -> list[str]:
    """Extract bare package names from a ``REQUIREMENTS = [...]`` list.

    Comments and version specifiers are stripped; only quoted entries count.

    Raises:
        ManifestParseError: if the list is missing.
    """
    match = _REQUIREMENTS_RE.search(setup_py)
    if not match:
        raise ManifestParseError("Could not find REQUIREMENTS in setup.py")

    packages = []
    for line in match.group(1).split("\n"):
        line = re.sub(r"#.*$", "", line).strip()
        if not (line.startswith('"') or line.startswith("'")):
            continue
        pkg = line.replace('"', "").replace("'", "")
        pkg = re.sub(r",\s*$", "", pkg)
        pkg = _VERSION_SPEC_RE.sub("", pkg).strip()
        if pkg:
            packages.append(pkg)
    return packages


class SkillSource:
    """TTL-cached access to the remote skill document and package list.

    Thread-safe: fetches run in worker threads (see the ``a*`` coroutine
    wrappers), so the caches are guarded by a lock.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        ttl_seconds: float | None = None,
        timeout_seconds: float | None = None,
        http_get: Callable[..., requests.Response] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = (base_url or config.SKILLS_BASE_URL).rstrip("/")
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else config.SKILLS_CACHE_TTL_SECONDS
        )
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else get_limit("skills.fetch_timeout")
        )
        self._http_get = http_get or requests.get
        self._clock = clock
        self._lock = threading.Lock()
        self._skill_cache: Optional[_CacheEntry[str]] = None
        self._package_cache: Optional[_CacheEntry[list[str]]] = None

    def _is_fresh(self, entry: Optional[_CacheEntry]) -> bool:
        return entry is not None and self._clock() - entry.fetched_at < self.ttl_seconds

    def _fetch_text(self, name: str) -> str:
        resp = self._http_get(f"{self.base_url}/{name}", timeout=self.timeout_seconds)
        resp.raise_for_status()
        return resp.text

    # ---- Skill document ----

    def get_skill_content(self) -> str:
        """Return SKILL.md without frontmatter, cached for the TTL."""
        with self._lock:
            if self._is_fresh(self._skill_cache):
                return self._skill_cache.value

        try:
            content = strip_frontmatter(self._fetch_text("SKILL.md"))
        except requests.RequestException as e:
            logger.warning(
                "Failed to fetch SKILL.md, using fallback: %s", e, extra=tagged("skills")
            )
            return FALLBACK_SKILL_CONTENT

        logger.info("Fetched SKILL.md (%d bytes)", len(content), extra=tagged("skills"))
        with self._lock:
            self._skill_cache = _CacheEntry(content, self._clock())
        return content

    # ---- Package manifest ----

    def get_package_list(self) -> list[str]:
        """Return the package names from setup.py, cached for the TTL."""
        with self._lock:
            if self._is_fresh(self._package_cache):
                return list(self._package_cache.value)

        try:
            packages = parse_requirements(self._fetch_text("setup.py"))
        except (requests.RequestException, ManifestParseError) as e:
            logger.warning(
                "Failed to fetch setup.py, using fallback: %s", e, extra=tagged("skills")
            )
            return list(FALLBACK_PACKAGES)

        logger.info("Parsed %d packages from setup.py", len(packages), extra=tagged("skills"))
        with self._lock:
            self._package_cache = _CacheEntry(packages, self._clock())
        return list(packages)

    # ---- Async wrappers (blocking HTTP off the event loop) ----

    async def aget_skill_content(self) -> str:
        return await asyncio.to_thread(self.get_skill_content)

    async def aget_package_list(self) -> list[str]:
        return await asyncio.to_thread(self.get_package_list)


# ---- Process default ----

_default_source: Optional[SkillSource] = None
_default_lock = threading.Lock()


def get_skill_source() -> SkillSource:
    """Return the shared SkillSource, built from config on first use."""
    global _default_source
    if _default_source is None:
        with _default_lock:
            if _default_source is None:
                _default_source = SkillSource()
    return _default_source
