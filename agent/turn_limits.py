"""agent/turn_limits.py - Central loop and timeout limits registry.

Every bound on the agent loop and the sandbox lives here as a named
constant. Config.json overrides via ``"turn_limits"``.

Public API:
    get_limit(name)  - lookup (int), KeyError on typo
    reload()         - re-read config overrides
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Default limits
# ---------------------------------------------------------------------------

DEFAULTS: dict[str, int] = {
    # Agent loop: one model call per iteration
    "agent.max_iterations":       10,
    # Sandbox timeouts (seconds)
    "sandbox.exec_timeout":       60,
    "sandbox.setup_timeout":     120,
    # Skill document / package manifest fetch (seconds)
    "skills.fetch_timeout":       10,
}

# ---------------------------------------------------------------------------
# Runtime state - overrides from config.json
# ---------------------------------------------------------------------------

_overrides: dict[str, int] = {}


def reload() -> None:
    """Re-read config.json overrides for turn limits.

    Called by ``config.reload_config()`` and at import time.
    """
    global _overrides
    import config
    _overrides = config.get("turn_limits", {})


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_limit(name: str) -> int:
    """Return the effective limit for *name*.

    Raises ``KeyError`` if *name* is not in DEFAULTS (catches typos).
    """
    if name not in DEFAULTS:
        raise KeyError(f"Unknown turn limit: {name!r}")
    override = _overrides.get(name)
    if override is not None:
        return int(override)
    return DEFAULTS[name]


# ---------------------------------------------------------------------------
# Initialize overrides at import time
# ---------------------------------------------------------------------------

try:
    reload()
except Exception:
    pass  # config may not be loadable yet (e.g., during testing)
