import logging
import os
import secrets
import string
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from rank_gateway.limiter import ACTION_LIMIT, ACTION_WINDOW_SECONDS

API_KEY_FILE = "api_key.txt"


def generate_api_key(length: int = 32) -> str:
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


def load_or_create_api_key(path: Path) -> str:
    if path.exists():
        key = path.read_text().strip()
        if len(key) >= 32: logging.info("API key loaded from file."); return key
    key = generate_api_key()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(key)
    logging.info(f"New API key generated and saved to {path}.")
    return key


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None: return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    roblosecurity: str
    group_id: int
    maintainer_key: str
    secondary_key: Optional[str] = None
    spectator_key: Optional[str] = None
    api_key: Optional[str] = None
    webhook_url: Optional[str] = None
    data_dir: Optional[Path] = None
    port: int = 8000
    action_limit: int = ACTION_LIMIT
    action_window_seconds: float = ACTION_WINDOW_SECONDS
    request_rate_limit: str = "10/minute"
    trust_proxy: bool = False
    restart_delay_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> "Settings":
        cookie = os.getenv("ROBLOSECURITY")
        if not cookie: raise ValueError("ROBLOSECURITY environment variable not set!")
        group_id = os.getenv("GROUP_ID")
        if not group_id: raise ValueError("GROUP_ID environment variable not set!")
        maintainer_key = os.getenv("MAINTAINER_KEY")
        if not maintainer_key: raise ValueError("MAINTAINER_KEY environment variable not set!")

        data_dir = Path(os.getenv("DATA_DIR", "data"))
        return cls(
            roblosecurity=cookie,
            group_id=int(group_id),
            maintainer_key=maintainer_key,
            secondary_key=os.getenv("SECONDARY_KEY") or None,
            spectator_key=os.getenv("SPECTATOR_KEY") or None,
            api_key=os.getenv("API_KEY") or load_or_create_api_key(data_dir / API_KEY_FILE),
            webhook_url=os.getenv("WEBHOOK_URL") or None,
            data_dir=data_dir,
            port=int(os.getenv("PORT", 8000)),
            action_limit=int(os.getenv("ACTION_LIMIT", ACTION_LIMIT)),
            action_window_seconds=float(os.getenv("ACTION_WINDOW_SECONDS", ACTION_WINDOW_SECONDS)),
            request_rate_limit=os.getenv("REQUEST_RATE_LIMIT", "10/minute"),
            trust_proxy=_env_bool("TRUST_PROXY"),
            restart_delay_seconds=float(os.getenv("RESTART_DELAY_SECONDS", 1.0)),
        )
