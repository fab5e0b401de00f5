from __future__ import annotations

import os
from datetime import timedelta, timezone
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "emissor-nfe"
KEYRING_SERVICE = "emissor-nfe"
KEYRING_USERNAME = "gateway-token"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Uses the same 3-tier resolution as _resolve_dir but only checks sources
    available before .env is loaded (env var set in shell, dev layout).
    Returns None if only platformdirs would resolve (since the dir may not exist yet).
    """
    from_env = os.environ.get("EMISSOR_NFE_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/emissor_nfe/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("EMISSOR_NFE_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("EMISSOR_NFE_DATA_DIR", "data", kind="data")


BRT = timezone(timedelta(hours=-3))

ENVIRONMENTS = ("homologacao", "producao")

ENDPOINTS = {
    "homologacao": "https://homologacao.focusnfe.com.br",
    "producao": "https://api.focusnfe.com.br",
}

GATEWAY_TIMEOUT = 30

SYNC_INTERVAL_SECONDS = 5 * 60
SYNC_MIN_AGE_MINUTES = 2

DEFAULT_SERIES = "1"
DEFAULT_MAX_ATTEMPTS = 3


def get_env() -> str:
    """Return the active gateway environment (``homologacao`` unless set to ``producao``)."""
    env = os.environ.get("NFE_AMBIENTE", "").strip().lower()
    return "producao" if env == "producao" else "homologacao"


def get_max_attempts() -> int:
    """Emission attempts per invoice, from NFE_EMISSION_MAX_ATTEMPTS (minimum 1)."""
    raw = os.environ.get("NFE_EMISSION_MAX_ATTEMPTS")
    if not raw:
        return DEFAULT_MAX_ATTEMPTS
    try:
        return max(1, int(raw))
    except ValueError:
        return DEFAULT_MAX_ATTEMPTS


def is_sync_disabled() -> bool:
    return os.environ.get("NFE_SYNC_DISABLED", "").strip().lower() in ("1", "true")


def get_webhook_secret() -> str | None:
    secret = os.environ.get("NFE_WEBHOOK_TOKEN", "").strip()
    return secret or None


# --- Keyring helpers ---


def _get_keyring_token() -> str | None:
    """Try to get the global gateway token from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return None


def _set_keyring_token(token: str) -> bool:
    """Store the global gateway token in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, token)
        return True
    except Exception:
        return False


def _delete_keyring_token() -> bool:
    """Remove the global gateway token from the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, KEYRING_USERNAME)
        return True
    except Exception:
        return False


def get_global_token() -> str | None:
    """Return the global (fallback) gateway token.

    Priority: 1) NFE_GATEWAY_TOKEN env var, 2) OS keyring.
    Companies should carry their own token; this is only the fallback.
    """
    token = os.environ.get("NFE_GATEWAY_TOKEN", "").strip()
    if token:
        return token
    token = _get_keyring_token()
    if token and token.strip():
        return token.strip()
    return None


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text()) or {}


def get_issued_dir(env: str) -> Path:
    """Return the directory where authorized NF-e XML artifacts are stored."""
    return get_data_dir() / env / "issued"
