import logging
import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ==========================================
# Path Configuration
# ==========================================

CORE_DIR = Path(__file__).resolve().parent
PACKAGE_DIR = CORE_DIR.parent
ROOT_DIR = PACKAGE_DIR.parent

ENV_FILE = ROOT_DIR / ".env"
load_dotenv(dotenv_path=ENV_FILE)


def _resolve_path(env_name: str, default: Path) -> Path:
    raw = os.getenv(env_name, "").strip()
    if not raw:
        return default
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = ROOT_DIR / path
    return path


DATA_DIR = _resolve_path("DATA_DIR", ROOT_DIR / "data")
DATABASE_PATH = _resolve_path("DATABASE_PATH", DATA_DIR / "panel.db")
SERVERS_DIR = _resolve_path("SERVERS_DIR", ROOT_DIR / "servers")
LOGS_DIR = _resolve_path("LOGS_DIR", ROOT_DIR / "logs")
BACKUP_DIR = _resolve_path("BACKUP_DIR", ROOT_DIR / "backup")
CONSOLE_RULES_FILE = DATA_DIR / "console_rules.yml"

# ==========================================
# Console Rule Extensions
# ==========================================

_RULE_KEYS = ("auth_prompts", "auth_success", "ignored", "roster_patterns")


def load_console_rules() -> dict[str, list[str]]:
    """Load extra console matching rules from the optional YAML file.

    Recognised keys: auth_prompts, auth_success, ignored (plain phrases) and
    roster_patterns (regexes with a named ``players`` group).
    """
    rules: dict[str, list[str]] = {key: [] for key in _RULE_KEYS}
    if not CONSOLE_RULES_FILE.exists():
        return rules
    try:
        with open(CONSOLE_RULES_FILE, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable console rules file {CONSOLE_RULES_FILE}: {e}")
        return rules
    if not isinstance(data, dict):
        logger.warning(f"Ignoring console rules file {CONSOLE_RULES_FILE}: expected a mapping")
        return rules
    for key in _RULE_KEYS:
        values = data.get(key) or []
        if isinstance(values, list):
            rules[key] = [str(v) for v in values if str(v).strip()]
    return rules


# ==========================================
# App Configuration
# ==========================================

APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
PORT = int(os.getenv("PORT", "3000"))
HOST = os.getenv("HOST", "127.0.0.1")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Host headers accepted by TrustedHostMiddleware (comma separated, "*.example.com" wildcards allowed)
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]
