from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from ingestion import Row, normalize_text

CLASS_COLUMN_ALIASES = ("klasse", "class", "gruppe")
CLASS_AVERAGE_AVAILABLE_TOOLTIP = "Durchschnittliche Werte pro Klasse"
CLASS_AVERAGE_UNAVAILABLE_TOOLTIP = (
    "Diese Funktion ist nur verfügbar, wenn ein Excel-Upload mit mehr als einer Klasse hochgeladen wurde."
)

logger = logging.getLogger(__name__)


def find_class_field(row: Mapping[str, Any]) -> str | None:
    for key in row:
        if str(key).strip().casefold() in CLASS_COLUMN_ALIASES:
            return key
    return None


@dataclass(frozen=True)
class ClassAverageAvailability:
    is_available: bool
    tooltip: str
    class_count: int


@dataclass
class ClassCountGate:
    """Number of distinct classes in the unfiltered upload.

    Set once per dataset load; filters never change it.
    """

    class_count: int = 0

    def load(self, raw_rows: Iterable[Mapping[str, Any]] | None) -> int:
        classes: set[str] = set()
        for row in raw_rows or []:
            class_field = find_class_field(row)
            if class_field is None:
                continue
            value = normalize_text(row.get(class_field))
            if value:
                classes.add(value)
        self.class_count = len(classes)
        logger.info("%d classes found in uploaded data", self.class_count)
        return self.class_count

    def reset(self) -> None:
        self.class_count = 0

    def to_dict(self) -> dict[str, int]:
        return {"class_count": self.class_count}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ClassCountGate":
        return cls(class_count=int((data or {}).get("class_count") or 0))

    def availability(self) -> ClassAverageAvailability:
        available = self.class_count > 1
        tooltip = CLASS_AVERAGE_AVAILABLE_TOOLTIP if available else CLASS_AVERAGE_UNAVAILABLE_TOOLTIP
        return ClassAverageAvailability(is_available=available, tooltip=tooltip, class_count=self.class_count)


@dataclass
class DatasetSession:
    """State of the currently loaded upload, kept in a ``dcc.Store`` between callbacks."""

    rows: list[Row] = field(default_factory=list)
    source_name: str | None = None
    gate: ClassCountGate = field(default_factory=ClassCountGate)

    @property
    def loaded(self) -> bool:
        return self.source_name is not None

    def load(self, rows: list[Row], source_name: str | None) -> None:
        self.rows = list(rows)
        self.source_name = source_name or "Upload"
        self.gate.load(self.rows)

    def reset(self) -> None:
        self.rows = []
        self.source_name = None
        self.gate.reset()

    def to_store(self) -> dict[str, Any]:
        return {"rows": self.rows, "source_name": self.source_name, **self.gate.to_dict()}

    @classmethod
    def from_store(cls, data: Mapping[str, Any] | None) -> "DatasetSession":
        if not data:
            return cls()
        rows = data.get("rows") or []
        return cls(rows=list(rows), source_name=data.get("source_name"), gate=ClassCountGate.from_dict(data))
