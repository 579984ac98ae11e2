import json
import os
from typing import Any, Dict, List, Optional, Tuple

from dotenv import dotenv_values

from .logging import get_logger

log = get_logger("config")

BACKENDS = ("openai", "ollama")
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "qwen2.5vl:7b"

# Used only when the environment does not provide credentials for the seeded accounts.
_DEFAULT_SEED_PASSWORDS = {
    "admin": "admin123",
    "staff": "staff123",
}


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories (e.g., `src/`) still find
    repository-level config files like `.env` and `products_seed.json`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Return key/value pairs of the nearest .env without touching os.environ."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    env = {k: v.strip() for k, v in dotenv_values(path).items() if v is not None}
    log.debug(f"Loaded {len(env)} key(s) from .env at {path}")
    return env


def _lookup(key: str, dotenv_dir: str, env: Optional[Dict[str, str]] = None) -> Optional[str]:
    v = os.environ.get(key)
    if v and v.strip():
        return v.strip()
    if env is None:
        env = _read_dotenv(dotenv_dir)
    v = env.get(key)
    return v.strip() if v and v.strip() else None


def load_backend(dotenv_dir: str) -> str:
    backend = (_lookup("BATCHCHECK_BACKEND", dotenv_dir) or "openai").lower()
    if backend not in BACKENDS:
        log.warning(f"Unknown BATCHCHECK_BACKEND={backend!r}; defaulting to 'openai'")
        return "openai"
    return backend


def load_openai(dotenv_dir: str) -> Tuple[Optional[str], Optional[str], str]:
    """Return (api_key, base_url, model) for the OpenAI backend."""
    env = _read_dotenv(dotenv_dir)
    api_key = _lookup("OPENAI_API_KEY", dotenv_dir, env)
    base_url = _lookup("OPENAI_BASE_URL", dotenv_dir, env)
    model = _lookup("BATCHCHECK_OPENAI_MODEL", dotenv_dir, env) or DEFAULT_OPENAI_MODEL
    return api_key, base_url, model


def load_ollama(dotenv_dir: str) -> Tuple[str, str]:
    """Return (ollama_url, ollama_model) with sensible defaults."""
    env = _read_dotenv(dotenv_dir)
    url = _lookup("OLLAMA_URL", dotenv_dir, env) or DEFAULT_OLLAMA_URL
    model = _lookup("OLLAMA_MODEL", dotenv_dir, env) or DEFAULT_OLLAMA_MODEL
    return url, model


def load_db_path(dotenv_dir: str) -> Optional[str]:
    return _lookup("BATCHCHECK_DB_PATH", dotenv_dir)


def load_seed_users(dotenv_dir: str) -> List[Dict[str, str]]:
    """Accounts that are (re)written on every database initialisation."""
    env = _read_dotenv(dotenv_dir)
    users = []
    for role in ("admin", "staff"):
        key = f"BATCHCHECK_{role.upper()}_PASSWORD"
        password = _lookup(key, dotenv_dir, env)
        if not password:
            log.warning(f"{key} not set; seeding '{role}' with the built-in default password")
            password = _DEFAULT_SEED_PASSWORDS[role]
        users.append({"username": role, "password": password, "role": role})
    return users


def load_seed_products(script_dir: str) -> List[Dict[str, Any]]:
    path = _find_upwards(script_dir, "products_seed.json")
    if not path:
        log.info("No products_seed.json found; proceeding without seeded products")
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning(f"Failed to read products_seed.json: {e}")
        return []
    if not isinstance(data, list):
        log.warning("products_seed.json must contain a JSON array; ignoring it")
        return []
    log.info(f"Loaded products_seed.json with {len(data)} entries from {path}")
    return [entry for entry in data if isinstance(entry, dict)]
