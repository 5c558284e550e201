import os
from dataclasses import dataclass
from typing import Tuple

# =========================
# Конфиг из переменных окружения
# =========================


@dataclass(frozen=True)
class Settings:
    bot_token: str
    db_path: str
    admin_ids: Tuple[int, ...]
    log_level: str


def _parse_ids(raw: str) -> Tuple[int, ...]:
    # "1, 2,,3" -> (1, 2, 3); пустая строка -> ()
    return tuple(int(x) for x in (p.strip() for p in raw.split(",")) if x)


def load_settings() -> Settings:
    bot_token = os.getenv("BOT_TOKEN", "").strip()
    if not bot_token:
        raise RuntimeError("Нужно установить переменную окружения BOT_TOKEN")

    return Settings(
        bot_token=bot_token,
        db_path=os.getenv("DB_PATH", "bot.sqlite3"),
        admin_ids=_parse_ids(os.getenv("ADMIN_IDS", "")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
