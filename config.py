from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import secrets

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_DB_PATH = BASE_DIR / "data" / "pixboard.db"
DEFAULT_UPLOAD_DIR = BASE_DIR / "uploads"
DEFAULT_SESSION_TTL = 60 * 60 * 24  # 1 day

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
PAGE_SIZE = 9
MAX_IMAGE_SIDE = 1200


@dataclass(frozen=True)
class Settings:
    db_path: Path
    upload_dir: Path
    secret_key: str
    secure_cookies: bool = False
    session_ttl: int = DEFAULT_SESSION_TTL
    log_level: str = "INFO"


def _env_flag(name: str) -> bool:
    value = os.getenv(name)
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes"}


def _load_secret_key() -> str:
    """Use the configured signing secret or fall back to a per-process one."""
    secret = os.getenv("PIXBOARD_SECRET_KEY")
    if secret:
        return secret
    logger.warning(
        "Using a randomly generated signing secret. Sessions will break when the process restarts. Set PIXBOARD_SECRET_KEY to a fixed value."
    )
    return secrets.token_urlsafe(32)


def load_settings() -> Settings:
    """Read settings from the environment (and a .env file, if present)."""
    load_dotenv()
    db_path = os.getenv("PIXBOARD_DB_PATH")
    upload_dir = os.getenv("PIXBOARD_UPLOAD_DIR")
    ttl = os.getenv("PIXBOARD_SESSION_TTL")
    return Settings(
        db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
        upload_dir=Path(upload_dir) if upload_dir else DEFAULT_UPLOAD_DIR,
        secret_key=_load_secret_key(),
        secure_cookies=_env_flag("PIXBOARD_SECURE_COOKIES"),
        session_ttl=int(ttl) if ttl else DEFAULT_SESSION_TTL,
        log_level=os.getenv("PIXBOARD_LOG_LEVEL", "INFO").upper(),
    )
