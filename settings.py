from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV = "ANWESENHEIT_LOG_LEVEL"
WEEK_OPTIONS = [1, 2, 4, 6, 8]
DEFAULT_WEEKS = 4

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnConfig:
    """Column names of the attendance export.

    Exports differ between schools, so every header the dashboard reads can be
    overridden from a JSON file (see ``load_from_file``).
    """

    surname: str = "Langname"
    first_name: str = "Vorname"
    start_date: str = "Beginndatum"
    start_time: str = "Beginnzeit"
    end_time: str = "Endzeit"
    absence_reason: str = "Abwesenheitsgrund"
    text_reason: str = "Text/Grund"
    status: str = "Status"
    school_class: str = "Klasse"

    @property
    def required_headers(self) -> tuple[str, str, str]:
        return (self.surname, self.first_name, self.start_date)

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ColumnConfig":
        known = {f.name for f in fields(cls)}
        values = {key: str(value).strip() for key, value in data.items() if key in known and str(value).strip()}
        return cls(**values)

    @classmethod
    def load_from_file(cls, filepath: str | os.PathLike | None) -> "ColumnConfig":
        if not filepath:
            return cls()
        path = Path(filepath)
        if not path.exists():
            logger.warning("Column config %s not found, using defaults", path)
            return cls()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Column config %s unreadable (%s), using defaults", path, exc)
            return cls()
        if not isinstance(raw, dict):
            logger.warning("Column config %s is not a JSON object, using defaults", path)
            return cls()
        return cls.from_dict(raw)


def setup_logging(level: str | None = None) -> logging.Logger:
    level_name = (level or os.getenv(LOG_LEVEL_ENV, "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
    return logging.getLogger("anwesenheit")
