"""
AgencyChat Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "chat.db"
_user_default_db = Path.home() / ".agencychat" / "chat.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("AGENCYCHAT_DB"):
    DB_PATH = os.getenv("AGENCYCHAT_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only for security
HOST = os.getenv("AGENCYCHAT_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("AGENCYCHAT_PORT", config_data.get("PORT", "39780")))
CHAT_VERSION = "0.1.0"

# Fixed-window rate limiting per (user, action class). Tenants may override the limits in chat settings.
RATE_LIMIT_MESSAGES_PER_MINUTE = int(os.getenv("AGENCYCHAT_RATE_LIMIT_MESSAGES", config_data.get("RATE_LIMIT_MESSAGES_PER_MINUTE", "20")))
RATE_LIMIT_FILES_PER_MINUTE = int(os.getenv("AGENCYCHAT_RATE_LIMIT_FILES", config_data.get("RATE_LIMIT_FILES_PER_MINUTE", "10")))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("AGENCYCHAT_RATE_LIMIT_WINDOW", "60"))
# How often expired rate-limit counters are dropped (seconds, 0 = never)
RATE_LIMIT_SWEEP_INTERVAL = int(os.getenv("AGENCYCHAT_RATE_LIMIT_SWEEP_INTERVAL", "300"))

# Deadlines for external calls (seconds). Expiry is reported as an internal failure.
BACKEND_TIMEOUT = float(os.getenv("AGENCYCHAT_BACKEND_TIMEOUT", config_data.get("BACKEND_TIMEOUT", "10")))
LLM_TIMEOUT = float(os.getenv("AGENCYCHAT_LLM_TIMEOUT", config_data.get("LLM_TIMEOUT", "30")))

# Number of messages sent back on join
HISTORY_LIMIT = int(os.getenv("AGENCYCHAT_HISTORY_LIMIT", config_data.get("HISTORY_LIMIT", "50")))

# Language-model backend. The assistant reports itself unavailable when no key is set.
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("AGENCYCHAT_OPENAI_BASE_URL") or None

# Dev: enable hot-reload for development
RELOAD_ENABLED = os.getenv("AGENCYCHAT_RELOAD", "0") in {"1", "true", "yes"}


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "RATE_LIMIT_MESSAGES_PER_MINUTE": RATE_LIMIT_MESSAGES_PER_MINUTE,
        "RATE_LIMIT_FILES_PER_MINUTE": RATE_LIMIT_FILES_PER_MINUTE,
        "BACKEND_TIMEOUT": BACKEND_TIMEOUT,
        "LLM_TIMEOUT": LLM_TIMEOUT,
        "HISTORY_LIMIT": HISTORY_LIMIT,
    }

