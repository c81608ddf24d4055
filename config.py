import json
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

# Secrets - stay in .env (ANTHROPIC_API_KEY, E2B_API_KEY, MP_API_KEY)

# User config - loaded from ~/.spinel/config.json (primary)
# or project-root config.json (fallback).
CONFIG_PATH = Path.home() / ".spinel" / "config.json"
_LOCAL_CONFIG_PATH = Path(__file__).resolve().parent / "config.json"
_user_config: dict = {}


def _load_config() -> dict:
    # Project-local config.json as base, user home config overlaid on top
    merged: dict = {}
    for path in (_LOCAL_CONFIG_PATH, CONFIG_PATH):
        if path is not None and path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    merged.update(json.load(f))
            except (json.JSONDecodeError, OSError):
                pass
    return merged


def get(key: str, default=None):
    """Get a config value by dot-separated key. E.g. get('sandbox.idle_timeout', 3600)"""
    keys = key.split(".")
    val = _user_config
    for k in keys:
        if isinstance(val, dict):
            val = val.get(k)
        else:
            return default
    return val if val is not None else default


_user_config = _load_config()


# ---- Data directory -----------------------------------------------------------
# Base directory for logs and persisted sessions.
# Priority: SPINEL_DIR env var > "data_dir" config key > ~/.spinel

_data_dir: Optional[Path] = None


def get_data_dir() -> Path:
    """Return the resolved base data directory.

    Resolution order:
    1. ``SPINEL_DIR`` environment variable (highest - useful for CI/Docker)
    2. ``"data_dir"`` key in config.json
    3. ``~/.spinel`` (default)
    """
    global _data_dir
    if _data_dir is not None:
        return _data_dir
    env_val = os.environ.get("SPINEL_DIR")
    if env_val:
        _data_dir = Path(env_val).expanduser().resolve()
    else:
        configured = get("data_dir")
        if configured:
            _data_dir = Path(configured).expanduser().resolve()
        else:
            _data_dir = Path.home() / ".spinel"
    return _data_dir


def _reset_data_dir() -> None:
    """Reset the cached data directory (for testing only)."""
    global _data_dir
    _data_dir = None


# ---- Secrets ------------------------------------------------------------------

def get_api_key(service: str) -> str | None:
    """Return the secret for *service* from the environment.

      anthropic → ANTHROPIC_API_KEY
      e2b       → E2B_API_KEY
      mp        → MP_API_KEY (Materials Project, injected into spinel sandboxes)
    """
    env_key = _SECRET_ENV_KEYS.get(service.lower())
    if env_key:
        return os.getenv(env_key) or None
    return None


_SECRET_ENV_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "e2b": "E2B_API_KEY",
    "mp": "MP_API_KEY",
}


# ---- Modes --------------------------------------------------------------------
# "vanilla" = plain agent, "spinel" = materials-science skills agent.
MODES = ("vanilla", "spinel")


def _sandbox_templates() -> dict[str, str | None]:
    """Per-mode E2B template IDs. Env vars override config.json.

    A mode without a template gets the default code-interpreter image and,
    for spinel, an on-demand package install before first use.
    """
    return {
        "vanilla": os.getenv("E2B_VANILLA_TEMPLATE") or get("sandbox.templates.vanilla"),
        "spinel": os.getenv("E2B_SPINEL_TEMPLATE") or get("sandbox.templates.spinel"),
    }


# ---- Model --------------------------------------------------------------------
MODEL = get("model", "claude-sonnet-4-5")
MAX_TOKENS = get("max_tokens", 4096)
ANTHROPIC_BASE_URL = get("anthropic_base_url")

# ---- Sandboxes ----------------------------------------------------------------
SANDBOX_TEMPLATES = _sandbox_templates()
SANDBOX_LIFETIME_SECONDS = get("sandbox.lifetime", 3600)  # remote auto-kill
SANDBOX_IDLE_TIMEOUT_SECONDS = get("sandbox.idle_timeout", 3600)
SANDBOX_REAP_INTERVAL_SECONDS = get("sandbox.reap_interval", 60)

# ---- Skill document source ----------------------------------------------------
SKILLS_BASE_URL = get(
    "skills.base_url",
    "https://raw.githubusercontent.com/charlesxjyang/spinel-plugin/main",
)
SKILLS_CACHE_TTL_SECONDS = get("skills.cache_ttl", 3600)

# ---- HTTP ---------------------------------------------------------------------
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "").strip() or get(
    "cors_origins", "http://localhost:3000,http://127.0.0.1:3000"
)


def reload_config() -> None:
    """Re-read config from disk and reassign all module-level constants.

    Sandboxes that already exist keep the template they were built from;
    only new sandboxes pick up changes.
    """
    global _user_config
    global MODEL, MAX_TOKENS, ANTHROPIC_BASE_URL
    global \
        SANDBOX_TEMPLATES, \
        SANDBOX_LIFETIME_SECONDS, \
        SANDBOX_IDLE_TIMEOUT_SECONDS, \
        SANDBOX_REAP_INTERVAL_SECONDS
    global SKILLS_BASE_URL, SKILLS_CACHE_TTL_SECONDS, CORS_ORIGINS

    load_dotenv(override=True)

    _user_config = _load_config()
    _reset_data_dir()

    MODEL = get("model", "claude-sonnet-4-5")
    MAX_TOKENS = get("max_tokens", 4096)
    ANTHROPIC_BASE_URL = get("anthropic_base_url")
    SANDBOX_TEMPLATES = _sandbox_templates()
    SANDBOX_LIFETIME_SECONDS = get("sandbox.lifetime", 3600)
    SANDBOX_IDLE_TIMEOUT_SECONDS = get("sandbox.idle_timeout", 3600)
    SANDBOX_REAP_INTERVAL_SECONDS = get("sandbox.reap_interval", 60)
    SKILLS_BASE_URL = get(
        "skills.base_url",
        "https://raw.githubusercontent.com/charlesxjyang/spinel-plugin/main",
    )
    SKILLS_CACHE_TTL_SECONDS = get("skills.cache_ttl", 3600)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "").strip() or get(
        "cors_origins", "http://localhost:3000,http://127.0.0.1:3000"
    )

    # Reload turn limits overrides from config
    from agent.turn_limits import reload as _reload_turn_limits

    _reload_turn_limits()
