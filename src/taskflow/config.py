# src/taskflow/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets required at import time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

ENV_PREFIX = "TASKFLOW"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


def _parse_room_map(items: List[str]) -> Dict[str, str]:
    """Parse "user_id=room_id" tokens. Malformed tokens are skipped."""
    out: Dict[str, str] = {}
    for item in items:
        user_id, sep, room_id = item.partition("=")
        if sep and user_id.strip() and room_id.strip():
            out[user_id.strip()] = room_id.strip()
    return out


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Connector flags ----
    console_enabled: bool
    matrix_enabled: bool

    # ---- Paging ----
    page_default_limit: int
    page_max_limit: int

    # ---- Matrix notifications ----
    matrix_homeserver: str
    matrix_user_id: str
    matrix_password: str
    matrix_notify_rooms: Dict[str, str]
    matrix_default_room: Optional[str]

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    tasks_db_path: Path
    matrix_store_path: Path

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskflow").strip() or "taskflow"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)
        matrix_enabled = _env_bool(_k("MATRIX_ENABLED"), False)

        page_default_limit = max(1, _env_int(_k("PAGE_DEFAULT_LIMIT"), 5))
        page_max_limit = max(page_default_limit, _env_int(_k("PAGE_MAX_LIMIT"), 50))

        matrix_homeserver = _env(_k("MATRIX_HOMESERVER")).strip()
        matrix_user_id = _env(_k("MATRIX_USER_ID")).strip()
        matrix_password = _env(_k("MATRIX_PASSWORD")).strip()
        matrix_notify_rooms = _parse_room_map(_env_list(_k("MATRIX_NOTIFY_ROOMS"), []))
        matrix_default_room = _env(_k("MATRIX_DEFAULT_ROOM")).strip() or None

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskflow"))
        tasks_db_path = _env_path(_k("TASKS_DB_PATH"), data_dir / "tasks.sqlite3")
        matrix_store_path = _env_path(_k("MATRIX_STORE_PATH"), data_dir / "matrix_store")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            console_enabled=console_enabled,
            matrix_enabled=matrix_enabled,
            page_default_limit=page_default_limit,
            page_max_limit=page_max_limit,
            matrix_homeserver=matrix_homeserver,
            matrix_user_id=matrix_user_id,
            matrix_password=matrix_password,
            matrix_notify_rooms=matrix_notify_rooms,
            matrix_default_room=matrix_default_room,
            data_dir=data_dir,
            tasks_db_path=tasks_db_path,
            matrix_store_path=matrix_store_path,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
