import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional

VERSION = "1.6.0"

DEFAULT_CLAIM_URL = "https://itchclaim.tmbpeter.com/api/active.json"

CATEGORIES = [
    "games",
    "tools",
    "game-assets",
    "comics",
    "books",
    "physical-games",
    "soundtracks",
    "game-mods",
    "misc",
]


def default_users_dir() -> str:
    if os.environ.get("ITCHCLAIM_DOCKER"):
        return "/data/"

    if sys.platform.startswith("win"):
        local_app_data = os.environ.get("LOCALAPPDATA")
        if local_app_data:
            return os.path.join(local_app_data, "ItchClaim", "users")
        return os.path.join(os.environ.get("TEMP", "."), ".itchclaim", "users")

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return os.path.join(xdg_config_home, "itchclaim", "users")
    return os.path.join(os.path.expanduser("~"), ".config", "itchclaim", "users")


@dataclass
class ClaimConfig:
    games_dir: str = "web/data"
    web_dir: str = "web"
    users_dir: str = field(default_factory=default_users_dir)
    timeout: float = 8.0
    auth_timeout: float = 30.0
    request_delay: float = 0.5
    claim_delay: float = 1.0
    max_retries: int = 3
    low_water_mark: int = 90000
    max_not_found_pages: int = 25
    max_pages: Optional[int] = None
    no_fail: bool = False
    categories: List[str] = field(default_factory=lambda: list(CATEGORIES))
    dev: bool = False
    log_file: Optional[str] = None


def load_env_credentials(path: str) -> Dict[str, str]:
    creds: Dict[str, str] = {}
    if not path:
        return creds
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                raw = line.strip()
                if not raw or raw.startswith("#") or "=" not in raw:
                    continue
                key, value = raw.split("=", 1)
                creds[key.strip()] = value.strip().strip('"').strip("'")
    except FileNotFoundError:
        return {}
    return creds


def resolve_credential(
    explicit: Optional[str], key: str, creds: Optional[Dict[str, str]] = None
) -> Optional[str]:
    if explicit:
        return explicit
    if os.environ.get(key):
        return os.environ[key]
    if creds and creds.get(key):
        return creds[key]
    return None
