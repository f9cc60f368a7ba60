from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from processing import SchoolYearStats, StudentStats, WeeklyStats, parse_week_count


def format_weekly_display(total: int, weekly: Sequence[int]) -> str:
    """``total(newest,...,oldest)``; ``weekly`` is ordered oldest to newest."""
    return f"{total}({','.join(str(value) for value in reversed(list(weekly)))})"


@dataclass
class SummaryTotals:
    student_count: int = 0
    verspaetungen_entsch: int = 0
    verspaetungen_unentsch: int = 0
    verspaetungen_offen: int = 0
    fehlzeiten_entsch: int = 0
    fehlzeiten_unentsch: int = 0
    fehlzeiten_offen: int = 0
    sj_verspaetungen: int = 0
    sj_fehlzeiten: int = 0
    sj_fehlzeiten_ges: int = 0
    weekly_verspaetungen: list[int] = field(default_factory=list)
    weekly_fehlzeiten: list[int] = field(default_factory=list)
    weekly_verspaetungen_total: int = 0
    weekly_fehlzeiten_total: int = 0

    @property
    def verspaetungen_display(self) -> str:
        return format_weekly_display(self.weekly_verspaetungen_total, self.weekly_verspaetungen)

    @property
    def fehlzeiten_display(self) -> str:
        return format_weekly_display(self.weekly_fehlzeiten_total, self.weekly_fehlzeiten)


def _add_bounded(sums: list[int], weekly: Sequence[int]) -> None:
    for index, value in enumerate(weekly[: len(sums)]):
        sums[index] += int(value)


def summarize(
    students: Iterable[tuple[str, StudentStats]],
    school_year_stats: Mapping[str, SchoolYearStats],
    weekly_stats: Mapping[str, WeeklyStats],
    selected_weeks: int | str,
) -> SummaryTotals:
    week_count = parse_week_count(selected_weeks)
    totals = SummaryTotals(weekly_verspaetungen=[0] * week_count, weekly_fehlzeiten=[0] * week_count)

    for student, stats in students:
        totals.student_count += 1
        totals.verspaetungen_entsch += stats.verspaetungen_entsch
        totals.verspaetungen_unentsch += stats.verspaetungen_unentsch
        totals.verspaetungen_offen += stats.verspaetungen_offen
        totals.fehlzeiten_entsch += stats.fehlzeiten_entsch
        totals.fehlzeiten_unentsch += stats.fehlzeiten_unentsch
        totals.fehlzeiten_offen += stats.fehlzeiten_offen

        year = school_year_stats.get(student) or SchoolYearStats()
        totals.sj_verspaetungen += year.verspaetungen_unentsch
        totals.sj_fehlzeiten += year.fehlzeiten_unentsch
        totals.sj_fehlzeiten_ges += year.fehlzeiten_gesamt

        weekly = weekly_stats.get(student) or WeeklyStats.zero(week_count)
        _add_bounded(totals.weekly_verspaetungen, weekly.verspaetungen.weekly)
        _add_bounded(totals.weekly_fehlzeiten, weekly.fehlzeiten.weekly)
        totals.weekly_verspaetungen_total += weekly.verspaetungen.total
        totals.weekly_fehlzeiten_total += weekly.fehlzeiten.total

    return totals


def class_average_series(
    weekly_stats: Mapping[str, WeeklyStats], selected_weeks: int | str, class_count: int
) -> dict[str, list[float]]:
    """Per-week averages per class, always computed over every student of the dataset."""
    week_count = parse_week_count(selected_weeks)
    if class_count <= 0:
        return {"verspaetungen": [0.0] * week_count, "fehlzeiten": [0.0] * week_count}

    late = [0] * week_count
    absent = [0] * week_count
    for weekly in weekly_stats.values():
        _add_bounded(late, weekly.verspaetungen.weekly)
        _add_bounded(absent, weekly.fehlzeiten.weekly)
    return {
        "verspaetungen": [value / class_count for value in late],
        "fehlzeiten": [value / class_count for value in absent],
    }
