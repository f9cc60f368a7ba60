from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

import numpy as np
import pandas as pd

from processing import STAT_FIELDS, DetailedStats, StudentStats, WeeklySeries, WeeklyStats, parse_week_count

WEEKDAY_NAMES = ("Montag", "Dienstag", "Mittwoch", "Donnerstag", "Freitag")
WEEKDAY_COLUMNS = ["Tag", "verspaetungen", "fehlzeiten_entsch", "fehlzeiten_unentsch", "fehlzeiten_gesamt"]
CRITICAL_UNEXCUSED_COUNT = 3
WEEKLY_LATE_LIMIT = 3
DETERIORATION_PERCENT = 50.0
MIN_PATTERN_COUNT = 2
CLASS_AVERAGE_FACTOR = 2.0
MOVING_AVERAGE_PERIOD = 3
OUTLIER_IQR_FACTOR = 1.5
RANKING_SIZE = 10
RANKING_KEYS = ("fehlzeiten_unentsch", "fehlzeiten_gesamt", "verspaetungen", "Schueler", "Klasse")

logger = logging.getLogger(__name__)


def late_threshold(weeks: float) -> int:
    """Unexcused tardies that make a window critical: 5 from four weeks on, 3 from two, else 2."""
    rounded = math.ceil(weeks)
    if rounded >= 4:
        return 5
    if rounded >= 2:
        return 3
    return 2


def percent_change(current: float, previous: float) -> float:
    if previous > 0:
        return (current - previous) / previous * 100
    return 100.0 if current > 0 else 0.0


@dataclass(frozen=True)
class PeriodChange:
    verspaetungen_change: float
    fehlzeiten_change: float

    @property
    def verspaetungen_worse(self) -> bool:
        return self.verspaetungen_change >= DETERIORATION_PERCENT

    @property
    def fehlzeiten_worse(self) -> bool:
        return self.fehlzeiten_change >= DETERIORATION_PERCENT


def period_change(current_lates: int, current_absences: int, previous_lates: int, previous_absences: int) -> PeriodChange:
    return PeriodChange(
        verspaetungen_change=percent_change(current_lates, previous_lates),
        fehlzeiten_change=percent_change(current_absences, previous_absences),
    )


def total_lates(stats: StudentStats) -> int:
    return stats.verspaetungen_entsch + stats.verspaetungen_unentsch + stats.verspaetungen_offen


def total_absences(stats: StudentStats) -> int:
    return stats.fehlzeiten_entsch + stats.fehlzeiten_unentsch + stats.fehlzeiten_offen


def class_average(students: Iterable[tuple[str, StudentStats]], klasse: str) -> tuple[float, float]:
    """Mean tardies and absences (all statuses) of the students in ``klasse``."""
    classmates = [stats for _, stats in students if stats.klasse == klasse]
    if not classmates:
        return 0.0, 0.0
    return (
        sum(total_lates(s) for s in classmates) / len(classmates),
        sum(total_absences(s) for s in classmates) / len(classmates),
    )


def has_excessive_week(weekly: Sequence[int], limit: int = WEEKLY_LATE_LIMIT) -> bool:
    return any(value > limit for value in weekly)


def max_weekly(weekly: Sequence[int]) -> int:
    return max([*weekly, 0])


def share_percent(part: int, total: int) -> float:
    if total == 0:
        return 0.0
    return part / total * 100


def split_weekly_window(
    stats: Mapping[str, WeeklyStats], week_count: int
) -> tuple[dict[str, WeeklyStats], dict[str, WeeklyStats]]:
    """Split series over ``2 * week_count`` weeks into (current, previous) windows."""
    current: dict[str, WeeklyStats] = {}
    previous: dict[str, WeeklyStats] = {}
    for student, weekly in stats.items():
        halves = []
        for part in (slice(week_count, None), slice(None, week_count)):
            late = list(weekly.verspaetungen.weekly[part])
            absent = list(weekly.fehlzeiten.weekly[part])
            halves.append(
                WeeklyStats(
                    verspaetungen=WeeklySeries(total=sum(late), weekly=late),
                    fehlzeiten=WeeklySeries(total=sum(absent), weekly=absent),
                )
            )
        current[student], previous[student] = halves
    return current, previous


@dataclass
class CriticalPattern:
    student: str
    klasse: str
    reasons: list[str] = field(default_factory=list)


def find_critical_patterns(
    students: Iterable[tuple[str, StudentStats]],
    all_stats: Mapping[str, StudentStats],
    current_weekly: Mapping[str, WeeklyStats],
    previous_weekly: Mapping[str, WeeklyStats],
    selected_weeks: int | str,
) -> list[CriticalPattern]:
    """Students whose counts, weekly peaks, trend or class comparison call for attention.

    Students with the most reasons come first.
    """
    week_count = parse_week_count(selected_weeks)
    threshold = late_threshold(week_count)
    everyone = list(all_stats.items())
    class_averages: dict[str, tuple[float, float]] = {}

    patterns: list[CriticalPattern] = []
    for student, stats in students:
        reasons: list[str] = []
        if stats.verspaetungen_unentsch >= CRITICAL_UNEXCUSED_COUNT:
            reasons.append(f"{stats.verspaetungen_unentsch} unentschuldigte Verspätungen im Zeitraum")
        if stats.fehlzeiten_unentsch >= CRITICAL_UNEXCUSED_COUNT:
            reasons.append(f"{stats.fehlzeiten_unentsch} unentschuldigte Fehltage im Zeitraum")

        current = current_weekly.get(student) or WeeklyStats.zero(week_count)
        previous = previous_weekly.get(student) or WeeklyStats.zero(week_count)
        if current.verspaetungen.total >= threshold:
            reasons.append(
                f"{current.verspaetungen.total} unentschuldigte Verspätungen in {week_count} Wochen (Grenze {threshold})"
            )
        if has_excessive_week(current.verspaetungen.weekly):
            reasons.append(f"{max_weekly(current.verspaetungen.weekly)} Verspätungen in einer Woche")

        change = period_change(
            current.verspaetungen.total,
            current.fehlzeiten.total,
            previous.verspaetungen.total,
            previous.fehlzeiten.total,
        )
        if change.verspaetungen_worse and current.verspaetungen.total >= MIN_PATTERN_COUNT:
            reasons.append(f"Verspätungen {change.verspaetungen_change:+.0f}% gegenüber den {week_count} Wochen davor")
        if change.fehlzeiten_worse and current.fehlzeiten.total >= MIN_PATTERN_COUNT:
            reasons.append(f"Fehltage {change.fehlzeiten_change:+.0f}% gegenüber den {week_count} Wochen davor")

        if stats.klasse:
            if stats.klasse not in class_averages:
                class_averages[stats.klasse] = class_average(everyone, stats.klasse)
            avg_late, avg_absent = class_averages[stats.klasse]
            late_total, absent_total = total_lates(stats), total_absences(stats)
            if avg_late > 0 and late_total >= MIN_PATTERN_COUNT and late_total >= CLASS_AVERAGE_FACTOR * avg_late:
                reasons.append(f"{late_total} Verspätungen bei Klassendurchschnitt {avg_late:.1f}")
            if avg_absent > 0 and absent_total >= MIN_PATTERN_COUNT and absent_total >= CLASS_AVERAGE_FACTOR * avg_absent:
                reasons.append(f"{absent_total} Fehltage bei Klassendurchschnitt {avg_absent:.1f}")

        if reasons:
            patterns.append(CriticalPattern(student=student, klasse=stats.klasse, reasons=reasons))

    logger.debug("%d critical patterns found", len(patterns))
    return sorted(patterns, key=lambda p: (-len(p.reasons), p.student.casefold()))


def moving_average(values: Sequence[float], period: int = MOVING_AVERAGE_PERIOD) -> list[float]:
    """Trailing mean; the first points average over the values available so far."""
    if len(values) == 0:
        return []
    if period < 2:
        return [float(v) for v in values]
    window = min(period, len(values))
    return pd.Series(values, dtype=float).rolling(window=window, min_periods=1).mean().tolist()


def detect_outliers(values: Sequence[float], factor: float = OUTLIER_IQR_FACTOR) -> list[bool]:
    if len(values) < 4:
        return [False] * len(values)
    arr = np.asarray(values, dtype=float)
    ordered = np.sort(arr)
    q1 = ordered[int(len(ordered) * 0.25)]
    q3 = ordered[int(len(ordered) * 0.75)]
    iqr = q3 - q1
    return ((arr < q1 - factor * iqr) | (arr > q3 + factor * iqr)).tolist()


@dataclass(frozen=True)
class RegressionResult:
    slope: float
    intercept: float
    r_squared: float
    trend_description: str
    prediction: float | None = None
    outliers: list[int] = field(default_factory=list)

    def line(self, length: int) -> list[float]:
        return [self.intercept + self.slope * index for index in range(length)]


def trend_description(slope: float, r_squared: float) -> str:
    if r_squared < 0.1:
        return "Kein erkennbarer Trend (niedrige Korrelation)"
    if abs(slope) < 0.05:
        return "Stabil (keine signifikante Veränderung)"

    direction = "Ansteigend" if slope > 0 else "Abnehmend"
    if abs(slope) > 1:
        strength = "sehr stark"
    elif abs(slope) > 0.5:
        strength = "stark"
    elif abs(slope) > 0.2:
        strength = "moderat"
    else:
        strength = "leicht"

    if r_squared > 0.7:
        reliability = "sehr zuverlässiger Trend"
    elif r_squared > 0.5:
        reliability = "zuverlässiger Trend"
    elif r_squared > 0.3:
        reliability = "erkennbarer Trend"
    else:
        reliability = "schwacher Trend"
    return f"{direction} {strength} ({reliability})"


def linear_regression(values: Sequence[float], exclude_outliers: bool = False) -> RegressionResult:
    """Least-squares line over equally spaced points (x = 0, 1, ...)."""
    if len(values) < 2:
        return RegressionResult(0.0, 0.0, 0.0, "Unbekannt (zu wenig Daten)")

    flags = detect_outliers(values)
    outliers = [index for index, flag in enumerate(flags) if flag]
    kept = [v for v, flag in zip(values, flags) if not (exclude_outliers and flag)]
    if len(kept) < 2:
        return RegressionResult(0.0, 0.0, 0.0, "Unbekannt (zu wenig Daten nach Ausreißerfilterung)", outliers=outliers)

    y = np.asarray(kept, dtype=float)
    if np.all(y == y[0]):
        return RegressionResult(0.0, float(y[0]), 1.0, "Konstant (keine Veränderung)", float(y[0]), outliers)

    x = np.arange(len(y), dtype=float)
    slope, intercept = np.polyfit(x, y, 1)
    fitted = intercept + slope * x
    tss = float(((y - y.mean()) ** 2).sum())
    rss = float(((y - fitted) ** 2).sum())
    r_squared = 1 - rss / tss
    return RegressionResult(
        slope=float(slope),
        intercept=float(intercept),
        r_squared=r_squared,
        trend_description=trend_description(float(slope), r_squared),
        prediction=float(intercept + slope * len(y)),
        outliers=outliers,
    )


def weekday_pattern(detailed_stats: Mapping[str, DetailedStats], students: Iterable[str]) -> pd.DataFrame:
    """Unexcused tardies and excused/unexcused absences per weekday, Monday to Friday."""
    counts = {name: {col: 0 for col in WEEKDAY_COLUMNS[1:]} for name in WEEKDAY_NAMES}
    sources = (
        ("verspaetungen_unentsch", "verspaetungen"),
        ("fehlzeiten_entsch", "fehlzeiten_entsch"),
        ("fehlzeiten_unentsch", "fehlzeiten_unentsch"),
    )
    for student in students:
        detailed = detailed_stats.get(student)
        if detailed is None:
            continue
        for stat_field, column in sources:
            for entry in detailed.entries(stat_field):
                weekday = entry.datum.weekday()
                if weekday < 5:
                    counts[WEEKDAY_NAMES[weekday]][column] += 1

    df = pd.DataFrame([{"Tag": name, **values} for name, values in counts.items()], columns=WEEKDAY_COLUMNS)
    df["fehlzeiten_gesamt"] = df["fehlzeiten_entsch"] + df["fehlzeiten_unentsch"]
    return df


def critical_weekday(pattern: pd.DataFrame, column: str) -> str | None:
    if pattern.empty or int(pattern[column].max()) == 0:
        return None
    return str(pattern.loc[pattern[column].idxmax(), "Tag"])


def student_ranking(
    students: Iterable[tuple[str, StudentStats]],
    sort_by: str = "fehlzeiten_unentsch",
    limit: int = RANKING_SIZE,
) -> list[dict[str, object]]:
    if sort_by not in RANKING_KEYS:
        raise ValueError(f"Unknown ranking column: {sort_by}")
    rows = [
        {
            "Schueler": student,
            "Klasse": stats.klasse,
            "fehlzeiten_unentsch": stats.fehlzeiten_unentsch,
            "fehlzeiten_gesamt": total_absences(stats),
            "verspaetungen": total_lates(stats),
        }
        for student, stats in students
    ]
    rows.sort(key=lambda row: str(row["Schueler"]).casefold())
    descending = sort_by not in {"Schueler", "Klasse"}
    rows.sort(key=lambda row: row[sort_by], reverse=descending)
    return rows[:limit]


def student_average_series(
    weekly_stats: Mapping[str, WeeklyStats], selected_weeks: int | str
) -> dict[str, list[float]]:
    """Per-week unexcused counts averaged over every student of the dataset."""
    week_count = parse_week_count(selected_weeks)
    student_count = len(weekly_stats)
    late = np.zeros(week_count)
    absent = np.zeros(week_count)
    for weekly in weekly_stats.values():
        for totals, series in ((late, weekly.verspaetungen), (absent, weekly.fehlzeiten)):
            values = series.weekly[:week_count]
            totals[: len(values)] += values
    if student_count:
        late /= student_count
        absent /= student_count
    return {"verspaetungen": late.tolist(), "fehlzeiten": absent.tolist()}


@dataclass
class AnalyticsOverview:
    entry_count: int = 0
    unexcused_rate: float = 0.0
    late_rate: float = 0.0
    critical_students: int = 0
    top_late_day: str | None = None
    top_absence_day: str | None = None


def analytics_overview(
    students: Sequence[tuple[str, StudentStats]], pattern: pd.DataFrame
) -> AnalyticsOverview:
    totals = {stat_field: sum(stats.count(stat_field) for _, stats in students) for stat_field in STAT_FIELDS}
    entry_count = sum(totals.values())
    unexcused = totals["verspaetungen_unentsch"] + totals["fehlzeiten_unentsch"]
    lates = totals["verspaetungen_entsch"] + totals["verspaetungen_unentsch"] + totals["verspaetungen_offen"]
    critical = sum(
        1
        for _, stats in students
        if stats.verspaetungen_unentsch >= CRITICAL_UNEXCUSED_COUNT or stats.fehlzeiten_unentsch >= CRITICAL_UNEXCUSED_COUNT
    )
    return AnalyticsOverview(
        entry_count=entry_count,
        unexcused_rate=share_percent(unexcused, entry_count),
        late_rate=share_percent(lates, entry_count),
        critical_students=critical,
        top_late_day=critical_weekday(pattern, "verspaetungen"),
        top_absence_day=critical_weekday(pattern, "fehlzeiten_unentsch"),
    )
