from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Mapping

import pandas as pd

from ingestion import Row, normalize_text
from settings import DEFAULT_WEEKS, ColumnConfig

KINDS = ("verspaetungen", "fehlzeiten")
BUCKETS = ("entsch", "unentsch", "offen")
STAT_FIELDS = tuple(f"{kind}_{bucket}" for kind in KINDS for bucket in BUCKETS)

TARDY_REASON = "Verspätung"
DEFAULT_ABSENCE_ART = "Fehltag"
TARDY_END_CUTOFF_MINUTES = 16 * 60 + 50
EXCUSED_STATUSES = {"entsch.", "Attest", "Attest Amtsarzt"}
UNEXCUSED_STATUSES = {"nicht entsch.", "nicht akzep."}
EXCUSE_DEADLINE = timedelta(days=7)
ENTRY_REFERENCE_TIME = time(12, 0)
INVALID_ENTRY_MARKER = "fehleintrag"

GERMAN_DATE_PATTERN = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{2,4})$")
ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}")
TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")

INVALID_DATE_MESSAGE = "Ungültiges Datum"
START_AFTER_END_MESSAGE = "Das Startdatum muss vor dem Enddatum liegen"

QUICK_SELECT_OPTIONS = [
    ("Diese Woche", "thisWeek"),
    ("Letzte Woche", "lastWeek"),
    ("Letzte 2 Wochen", "lastTwoWeeks"),
    ("Dieser Monat", "thisMonth"),
    ("Letzter Monat", "lastMonth"),
    ("Schuljahr", "schoolYear"),
]

ENTRY_COLUMNS = ["Student", "Klasse", "Datum", "Kind", "Bucket", "Entry"]

logger = logging.getLogger(__name__)


class DateRangeError(ValueError):
    pass


@dataclass(frozen=True)
class AbsenceEntry:
    datum: date
    art: str
    status: str = ""
    beginn_zeit: str | None = None
    end_zeit: str | None = None
    grund: str | None = None

    @property
    def is_tardy(self) -> bool:
        return self.art == TARDY_REASON


@dataclass
class StudentStats:
    verspaetungen_entsch: int = 0
    verspaetungen_unentsch: int = 0
    verspaetungen_offen: int = 0
    fehlzeiten_entsch: int = 0
    fehlzeiten_unentsch: int = 0
    fehlzeiten_offen: int = 0
    klasse: str = ""

    def increment(self, stat_field: str) -> None:
        setattr(self, stat_field, getattr(self, stat_field) + 1)

    def count(self, stat_field: str) -> int:
        return int(getattr(self, stat_field))


@dataclass
class DetailedStats:
    verspaetungen_entsch: list[AbsenceEntry] = field(default_factory=list)
    verspaetungen_unentsch: list[AbsenceEntry] = field(default_factory=list)
    verspaetungen_offen: list[AbsenceEntry] = field(default_factory=list)
    fehlzeiten_entsch: list[AbsenceEntry] = field(default_factory=list)
    fehlzeiten_unentsch: list[AbsenceEntry] = field(default_factory=list)
    fehlzeiten_offen: list[AbsenceEntry] = field(default_factory=list)

    def add(self, stat_field: str, entry: AbsenceEntry) -> None:
        getattr(self, stat_field).append(entry)

    def entries(self, stat_field: str) -> list[AbsenceEntry]:
        return list(getattr(self, stat_field))


@dataclass
class SchoolYearStats:
    verspaetungen_unentsch: int = 0
    fehlzeiten_unentsch: int = 0
    fehlzeiten_gesamt: int = 0


@dataclass
class SchoolYearDetails:
    # all tardies of the school year, whatever their status
    verspaetungen: list[AbsenceEntry] = field(default_factory=list)
    fehlzeiten_entsch: list[AbsenceEntry] = field(default_factory=list)
    fehlzeiten_unentsch: list[AbsenceEntry] = field(default_factory=list)
    fehlzeiten_gesamt: list[AbsenceEntry] = field(default_factory=list)


@dataclass
class WeeklySeries:
    total: int = 0
    weekly: list[int] = field(default_factory=list)


@dataclass
class WeeklyStats:
    verspaetungen: WeeklySeries = field(default_factory=WeeklySeries)
    fehlzeiten: WeeklySeries = field(default_factory=WeeklySeries)

    @classmethod
    def zero(cls, week_count: int) -> "WeeklyStats":
        return cls(
            verspaetungen=WeeklySeries(total=0, weekly=[0] * week_count),
            fehlzeiten=WeeklySeries(total=0, weekly=[0] * week_count),
        )

    def series(self, kind: str) -> WeeklySeries:
        return self.verspaetungen if kind == "verspaetungen" else self.fehlzeiten


@dataclass(frozen=True)
class Week:
    start: datetime
    end: datetime
    week: int
    year: int

    def contains(self, day: date) -> bool:
        return self.start.date() <= day <= self.end.date()

    @property
    def label(self) -> str:
        return f"KW {self.week}"


@dataclass
class ProcessedData:
    student_stats: dict[str, StudentStats] = field(default_factory=dict)
    detailed_stats: dict[str, DetailedStats] = field(default_factory=dict)
    school_year_details: dict[str, SchoolYearDetails] = field(default_factory=dict)
    weekly_details: dict[str, DetailedStats] = field(default_factory=dict)

    def register(self, student: str, klasse: str) -> None:
        if student in self.student_stats:
            return
        self.student_stats[student] = StudentStats(klasse=klasse)
        self.detailed_stats[student] = DetailedStats()
        self.school_year_details[student] = SchoolYearDetails()
        self.weekly_details[student] = DetailedStats()


def parse_export_date(value: object) -> date | None:
    text = normalize_text(value)
    if not text:
        return None
    match = GERMAN_DATE_PATTERN.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        if year < 100:
            year += 2000
        try:
            return date(year, month, day)
        except ValueError:
            return None
    if ISO_DATE_PATTERN.match(text):
        # spreadsheet cells arrive as "2024-10-07 00:00:00"
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    parsed = pd.to_datetime(text, dayfirst=True, errors="coerce")
    if pd.isna(parsed):
        return None
    return parsed.date()


def parse_time_to_minutes(value: object) -> int | None:
    match = TIME_PATTERN.match(normalize_text(value))
    if not match:
        return None
    return int(match.group(1)) * 60 + int(match.group(2))


def is_tardy(absence_reason: object, end_time: object) -> bool:
    """Tardy when the reason says so, or when no reason is given and the pupil left before 16:50."""
    reason = normalize_text(absence_reason)
    if reason == TARDY_REASON:
        return True
    if reason:
        return False
    minutes = parse_time_to_minutes(end_time)
    return minutes is not None and minutes < TARDY_END_CUTOFF_MINUTES


def excuse_deadline_passed(entry_date: date, now: datetime) -> bool:
    return now > datetime.combine(entry_date, ENTRY_REFERENCE_TIME) + EXCUSE_DEADLINE


def status_bucket(status: object, entry_date: date, now: datetime) -> str | None:
    value = normalize_text(status)
    if value in EXCUSED_STATUSES:
        return "entsch"
    if value in UNEXCUSED_STATUSES:
        return "unentsch"
    if value:
        return None
    return "unentsch" if excuse_deadline_passed(entry_date, now) else "offen"


def student_key(surname: str, first_name: str) -> str:
    return f"{surname}, {first_name}"


def split_student_key(student: str) -> tuple[str, str]:
    surname, _, first_name = student.partition(",")
    return surname.strip(), first_name.strip()


def normalize_rows(
    rows: Iterable[Mapping[str, Any]], columns: ColumnConfig | None = None, now: datetime | None = None
) -> pd.DataFrame:
    """One record per usable export row.

    Rows without name or start date, and rows flagged as data-entry mistakes,
    are dropped. Rows with an unreadable date keep the student but carry no entry.
    """
    columns = columns or ColumnConfig()
    now = now or datetime.now()
    records: list[dict[str, Any]] = []
    skipped = 0
    for row in rows:
        surname = normalize_text(row.get(columns.surname))
        first_name = normalize_text(row.get(columns.first_name))
        start_text = normalize_text(row.get(columns.start_date))
        if not surname or not first_name or not start_text:
            skipped += 1
            continue
        text_reason = normalize_text(row.get(columns.text_reason))
        if INVALID_ENTRY_MARKER in text_reason.casefold():
            skipped += 1
            continue

        record: dict[str, Any] = {
            "Student": student_key(surname, first_name),
            "Klasse": normalize_text(row.get(columns.school_class)),
            "Datum": None,
            "Kind": None,
            "Bucket": None,
            "Entry": None,
        }
        entry_date = parse_export_date(start_text)
        if entry_date is None:
            logger.debug("Unreadable date %r for %s", start_text, record["Student"])
            records.append(record)
            continue

        reason = normalize_text(row.get(columns.absence_reason))
        end_time = normalize_text(row.get(columns.end_time))
        tardy = is_tardy(reason, end_time)
        status = normalize_text(row.get(columns.status))
        record["Datum"] = entry_date
        record["Kind"] = "verspaetungen" if tardy else "fehlzeiten"
        record["Bucket"] = status_bucket(status, entry_date, now)
        record["Entry"] = AbsenceEntry(
            datum=entry_date,
            art=TARDY_REASON if tardy else (reason or DEFAULT_ABSENCE_ART),
            status=status,
            beginn_zeit=normalize_text(row.get(columns.start_time)) or None,
            end_zeit=end_time or None,
            grund=text_reason or None,
        )
        records.append(record)

    if skipped:
        logger.debug("Skipped %d rows without name/date or marked as Fehleintrag", skipped)
    return pd.DataFrame(records, columns=ENTRY_COLUMNS)


def school_year_bounds(now: datetime | date | None = None) -> tuple[date, date]:
    today = _as_date(now or datetime.now())
    start_year = today.year - 1 if today.month < 9 else today.year
    return date(start_year, 9, 1), date(start_year + 1, 7, 31)


def last_n_weeks(n: int, now: datetime | date | None = None) -> list[Week]:
    """Monday-to-Friday windows, oldest first, ending with this week's Friday.

    On Saturday and Sunday the anchor is the Friday just past.
    """
    today = _as_date(now or datetime.now())
    friday = today - timedelta(days=today.weekday() - 4)
    weeks: list[Week] = []
    for offset in range(n):
        end_day = friday - timedelta(days=7 * offset)
        start_day = end_day - timedelta(days=4)
        weeks.insert(
            0,
            Week(
                start=datetime.combine(start_day, time.min),
                end=datetime.combine(end_day, time.max),
                week=start_day.isocalendar()[1],
                year=start_day.year,
            ),
        )
    return weeks


def week_index(weeks: list[Week], day: date) -> int | None:
    for index, week in enumerate(weeks):
        if week.contains(day):
            return index
    return None


def parse_week_count(value: object) -> int:
    try:
        count = int(str(value).strip())
    except (TypeError, ValueError):
        return DEFAULT_WEEKS
    return count if count > 0 else DEFAULT_WEEKS


def process_data(
    rows: Iterable[Mapping[str, Any]],
    start: date | datetime,
    end: date | datetime,
    columns: ColumnConfig | None = None,
    now: datetime | None = None,
) -> ProcessedData:
    now = now or datetime.now()
    start_day, end_day = _as_date(start), _as_date(end)
    year_start, year_end = school_year_bounds(now)
    frame = normalize_rows(rows, columns, now)

    result = ProcessedData()
    for row in frame.itertuples(index=False):
        result.register(row.Student, row.Klasse)
        entry = row.Entry
        if not isinstance(entry, AbsenceEntry):
            continue
        stat_field = f"{row.Kind}_{row.Bucket}" if row.Bucket in BUCKETS else None

        if stat_field and start_day <= entry.datum <= end_day:
            result.student_stats[row.Student].increment(stat_field)
            result.detailed_stats[row.Student].add(stat_field, entry)

        if year_start <= entry.datum <= year_end:
            year_details = result.school_year_details[row.Student]
            if row.Kind == "verspaetungen":
                year_details.verspaetungen.append(entry)
            else:
                year_details.fehlzeiten_gesamt.append(entry)
                if row.Bucket == "unentsch":
                    year_details.fehlzeiten_unentsch.append(entry)
                elif row.Bucket == "entsch":
                    year_details.fehlzeiten_entsch.append(entry)

        if stat_field:
            result.weekly_details[row.Student].add(stat_field, entry)

    logger.debug("Processed %d entries for %d students", len(frame), len(result.student_stats))
    return result


def calculate_school_year_stats(
    rows: Iterable[Mapping[str, Any]], columns: ColumnConfig | None = None, now: datetime | None = None
) -> dict[str, SchoolYearStats]:
    frame = normalize_rows(rows, columns, now)
    stats = {student: SchoolYearStats() for student in frame["Student"].unique()}
    if frame.empty:
        return stats

    year_start, year_end = school_year_bounds(now)
    in_year = frame["Datum"].apply(lambda d: isinstance(d, date) and year_start <= d <= year_end)
    year_df = frame[in_year]
    tardy = year_df["Kind"] == "verspaetungen"
    absent = year_df["Kind"] == "fehlzeiten"
    unexcused = year_df["Bucket"] == "unentsch"

    for student, count in year_df[tardy & unexcused].groupby("Student").size().items():
        stats[student].verspaetungen_unentsch = int(count)
    for student, count in year_df[absent & unexcused].groupby("Student").size().items():
        stats[student].fehlzeiten_unentsch = int(count)
    for student, count in year_df[absent].groupby("Student").size().items():
        stats[student].fehlzeiten_gesamt = int(count)
    return stats


def calculate_weekly_stats(
    rows: Iterable[Mapping[str, Any]],
    selected_weeks: int | str,
    columns: ColumnConfig | None = None,
    now: datetime | None = None,
) -> dict[str, WeeklyStats]:
    """Unexcused tardies and absences per week of the reporting window."""
    week_count = parse_week_count(selected_weeks)
    weeks = last_n_weeks(week_count, now)
    frame = normalize_rows(rows, columns, now)
    stats = {student: WeeklyStats.zero(week_count) for student in frame["Student"].unique()}

    for row in frame[frame["Bucket"] == "unentsch"].itertuples(index=False):
        index = week_index(weeks, row.Datum)
        if index is None:
            continue
        series = stats[row.Student].series(row.Kind)
        series.weekly[index] += 1
        series.total += 1
    return stats


def student_details(
    processed: ProcessedData, student: str, filter_type: str | None, weeks: list[Week] | None = None
) -> list[AbsenceEntry]:
    if not filter_type:
        return []

    details: list[AbsenceEntry] = []
    if filter_type.startswith("sj_"):
        year_details = processed.school_year_details.get(student)
        if year_details is not None:
            by_filter = {
                "sj_verspaetungen": year_details.verspaetungen,
                "sj_fehlzeiten": year_details.fehlzeiten_unentsch,
                "sj_fehlzeiten_ges": year_details.fehlzeiten_gesamt,
            }
            details = list(by_filter.get(filter_type, []))
    elif filter_type.startswith("sum_"):
        weekly = processed.weekly_details.get(student)
        if weekly is not None:
            entries = weekly.verspaetungen_unentsch if filter_type == "sum_verspaetungen" else weekly.fehlzeiten_unentsch
            details = [entry for entry in entries if any(week.contains(entry.datum) for week in weeks or [])]
    else:
        detailed = processed.detailed_stats.get(student)
        if detailed is not None:
            if filter_type == "details":
                details = detailed.verspaetungen_unentsch + detailed.fehlzeiten_unentsch
            elif filter_type in STAT_FIELDS:
                details = detailed.entries(filter_type)

    return sorted(details, key=lambda entry: entry.datum, reverse=True)


def filter_students(
    student_stats: Mapping[str, StudentStats],
    search: str | None = None,
    classes: Iterable[str] | None = None,
    only_unexcused_late: bool = False,
    only_unexcused_absent: bool = False,
    min_unexcused_lates: int | str | None = None,
    min_unexcused_absences: int | str | None = None,
) -> list[tuple[str, StudentStats]]:
    query = normalize_text(search).casefold()
    class_set = {c for c in (classes or []) if c}
    min_lates = _optional_int(min_unexcused_lates)
    min_absences = _optional_int(min_unexcused_absences)

    selected: list[tuple[str, StudentStats]] = []
    for student, stats in student_stats.items():
        if query and query not in student.casefold():
            continue
        if class_set and stats.klasse not in class_set:
            continue
        if only_unexcused_late or only_unexcused_absent:
            late_hit = only_unexcused_late and stats.verspaetungen_unentsch > 0
            absent_hit = only_unexcused_absent and stats.fehlzeiten_unentsch > 0
            if not (late_hit or absent_hit):
                continue
        if min_lates is not None and stats.verspaetungen_unentsch < min_lates:
            continue
        if min_absences is not None and stats.fehlzeiten_unentsch < min_absences:
            continue
        selected.append((student, stats))
    return sorted(selected, key=lambda item: item[0].casefold())


def available_classes(rows: Iterable[Mapping[str, Any]], columns: ColumnConfig | None = None) -> list[str]:
    columns = columns or ColumnConfig()
    values = {normalize_text(row.get(columns.school_class)) for row in rows}
    return sorted(value for value in values if value)


def validate_date_range(start: str | date | None, end: str | date | None) -> tuple[date, date]:
    start_day = _parse_iso_date(start)
    end_day = _parse_iso_date(end)
    if start_day is None or end_day is None:
        raise DateRangeError(INVALID_DATE_MESSAGE)
    if start_day > end_day:
        raise DateRangeError(START_AFTER_END_MESSAGE)
    return start_day, end_day


def month_range(year: int, month: int) -> tuple[date, date]:
    first = date(year, month, 1)
    next_first = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return first, next_first - timedelta(days=1)


def default_date_range(today: date | None = None) -> tuple[date, date]:
    today = today or date.today()
    return month_range(today.year, today.month)


def quick_select_range(option: str | None, today: date | None = None) -> tuple[date, date] | None:
    today = today or date.today()
    monday = today - timedelta(days=today.weekday())
    if option == "thisWeek":
        return monday, monday + timedelta(days=6)
    if option == "lastWeek":
        start = monday - timedelta(days=7)
        return start, start + timedelta(days=6)
    if option == "lastTwoWeeks":
        start = monday - timedelta(days=14)
        return start, start + timedelta(days=13)
    if option == "thisMonth":
        return month_range(today.year, today.month)
    if option == "lastMonth":
        if today.month == 1:
            return month_range(today.year - 1, 12)
        return month_range(today.year, today.month - 1)
    if option == "schoolYear":
        return school_year_bounds(today)
    return None


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def _parse_iso_date(value: str | date | None) -> date | None:
    if isinstance(value, date):
        return _as_date(value)
    text = normalize_text(value)
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _optional_int(value: int | str | None) -> int | None:
    if value is None:
        return None
    text = normalize_text(value)
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        return None
