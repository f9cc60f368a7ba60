from datetime import date, datetime

import pytest

from processing import (
    INVALID_DATE_MESSAGE,
    START_AFTER_END_MESSAGE,
    DateRangeError,
    StudentStats,
    available_classes,
    calculate_school_year_stats,
    calculate_weekly_stats,
    default_date_range,
    filter_students,
    is_tardy,
    last_n_weeks,
    parse_export_date,
    parse_week_count,
    process_data,
    quick_select_range,
    school_year_bounds,
    status_bucket,
    student_details,
    validate_date_range,
)
from settings import ColumnConfig

# Wednesday of KW 42
NOW = datetime(2024, 10, 16, 10, 0)


def make_row(
    surname: str,
    first_name: str,
    datum: str,
    reason: str = "",
    status: str = "",
    end: str = "",
    klasse: str = "5a",
    text: str = "",
) -> dict[str, str]:
    return {
        "Langname": surname,
        "Vorname": first_name,
        "Beginndatum": datum,
        "Beginnzeit": "08:00",
        "Endzeit": end,
        "Abwesenheitsgrund": reason,
        "Text/Grund": text,
        "Status": status,
        "Klasse": klasse,
    }


def sample_rows() -> list[dict[str, str]]:
    return [
        make_row("Muster", "Max", "07.10.2024", reason="Verspätung", status="entsch.", end="08:20"),
        make_row("Muster", "Max", "08.10.2024", reason="Krankheit", end="13:00"),
        make_row("Muster", "Max", "15.10.2024", end="10:00"),
        make_row("Muster", "Max", "10.10.2024", reason="Krankheit", text="Fehleintrag Sekretariat"),
        make_row("Beispiel", "Anna", "02.09.2024", reason="Krankheit", status="nicht entsch.", klasse="5b"),
        make_row("Beispiel", "Anna", "irgendwann", reason="Krankheit", klasse="5b"),
        make_row("Beispiel", "Anna", "15.07.2024", reason="Krankheit", status="nicht entsch.", klasse="5b"),
        make_row("Ohne", "", "07.10.2024", reason="Krankheit"),
    ]


def test_status_buckets_and_excuse_deadline() -> None:
    day = date(2024, 10, 8)
    assert status_bucket("entsch.", day, NOW) == "entsch"
    assert status_bucket("Attest Amtsarzt", day, NOW) == "entsch"
    assert status_bucket("nicht akzep.", day, NOW) == "unentsch"
    assert status_bucket("", date(2024, 10, 8), NOW) == "unentsch"
    assert status_bucket("", date(2024, 10, 9), NOW) == "offen"
    assert status_bucket("in Bearbeitung", day, NOW) is None


def test_tardy_detection_uses_reason_then_end_time() -> None:
    assert is_tardy("Verspätung", "")
    assert not is_tardy("Krankheit", "10:00")
    assert is_tardy("", "10:00")
    assert not is_tardy("", "16:50")
    assert not is_tardy("", "")


def test_parse_export_date_formats() -> None:
    assert parse_export_date("07.10.2024") == date(2024, 10, 7)
    assert parse_export_date("7.10.24") == date(2024, 10, 7)
    assert parse_export_date("31.02.2024") is None
    assert parse_export_date("") is None
    assert parse_export_date("2024-10-07 00:00:00") == date(2024, 10, 7)
    assert parse_export_date("2024-02-30") is None


def test_process_data_buckets_entries_in_range() -> None:
    processed = process_data(sample_rows(), date(2024, 10, 1), date(2024, 10, 31), now=NOW)

    assert set(processed.student_stats) == {"Muster, Max", "Beispiel, Anna"}
    assert set(processed.detailed_stats) == set(processed.student_stats)
    assert set(processed.school_year_details) == set(processed.student_stats)
    assert set(processed.weekly_details) == set(processed.student_stats)
    max_stats = processed.student_stats["Muster, Max"]
    assert max_stats.klasse == "5a"
    assert max_stats.verspaetungen_entsch == 1
    assert max_stats.verspaetungen_offen == 1
    assert max_stats.fehlzeiten_unentsch == 1
    assert max_stats.fehlzeiten_entsch == 0

    anna_stats = processed.student_stats["Beispiel, Anna"]
    assert anna_stats == StudentStats(klasse="5b")
    assert len(processed.school_year_details["Beispiel, Anna"].fehlzeiten_unentsch) == 1


def test_school_year_stats_count_current_year_only() -> None:
    stats = calculate_school_year_stats(sample_rows(), now=NOW)

    assert stats["Beispiel, Anna"].fehlzeiten_unentsch == 1
    assert stats["Beispiel, Anna"].fehlzeiten_gesamt == 1
    assert stats["Muster, Max"].verspaetungen_unentsch == 0
    assert stats["Muster, Max"].fehlzeiten_unentsch == 1
    assert stats["Muster, Max"].fehlzeiten_gesamt == 1


def test_school_year_bounds() -> None:
    assert school_year_bounds(date(2024, 10, 16)) == (date(2024, 9, 1), date(2025, 7, 31))
    assert school_year_bounds(date(2025, 3, 1)) == (date(2024, 9, 1), date(2025, 7, 31))
    assert school_year_bounds(date(2025, 8, 15)) == (date(2024, 9, 1), date(2025, 7, 31))


def test_last_n_weeks_are_oldest_first_and_end_on_friday() -> None:
    weeks = last_n_weeks(4, NOW)
    assert [week.start.date() for week in weeks] == [
        date(2024, 9, 23),
        date(2024, 9, 30),
        date(2024, 10, 7),
        date(2024, 10, 14),
    ]
    assert weeks[-1].end.date() == date(2024, 10, 18)
    assert weeks[-1].label == "KW 42"

    saturday_weeks = last_n_weeks(1, date(2024, 10, 19))
    assert saturday_weeks[0].start.date() == date(2024, 10, 14)


def test_weekly_stats_count_unexcused_per_week() -> None:
    weekly = calculate_weekly_stats(sample_rows(), 4, now=NOW)

    assert weekly["Muster, Max"].fehlzeiten.weekly == [0, 0, 1, 0]
    assert weekly["Muster, Max"].fehlzeiten.total == 1
    assert weekly["Muster, Max"].verspaetungen.weekly == [0, 0, 0, 0]
    assert weekly["Beispiel, Anna"].fehlzeiten.total == 0
    assert weekly["Beispiel, Anna"].fehlzeiten.weekly == [0, 0, 0, 0]


def test_parse_week_count_falls_back_to_default() -> None:
    assert parse_week_count("6") == 6
    assert parse_week_count(None) == 4
    assert parse_week_count("abc") == 4
    assert parse_week_count(0) == 4


def test_student_details_per_filter_type() -> None:
    processed = process_data(sample_rows(), date(2024, 10, 1), date(2024, 10, 31), now=NOW)
    weeks = last_n_weeks(4, NOW)
    student = "Muster, Max"

    assert [e.datum for e in student_details(processed, student, "details")] == [date(2024, 10, 8)]
    assert [e.datum for e in student_details(processed, student, "verspaetungen_entsch")] == [date(2024, 10, 7)]
    assert [e.datum for e in student_details(processed, student, "sj_verspaetungen")] == [
        date(2024, 10, 15),
        date(2024, 10, 7),
    ]
    assert [e.datum for e in student_details(processed, student, "sum_fehlzeiten", weeks)] == [date(2024, 10, 8)]
    assert student_details(processed, student, None) == []
    assert student_details(processed, "Niemand, Nie", "details") == []


def test_filter_students_combines_criteria() -> None:
    stats = {
        "Zeller, Zoe": StudentStats(verspaetungen_unentsch=3, klasse="5a"),
        "Adam, Ben": StudentStats(fehlzeiten_unentsch=1, klasse="5b"),
        "Muster, Max": StudentStats(klasse="5a"),
    }

    assert [name for name, _ in filter_students(stats)] == ["Adam, Ben", "Muster, Max", "Zeller, Zoe"]
    assert [name for name, _ in filter_students(stats, search="ZOE")] == ["Zeller, Zoe"]
    assert [name for name, _ in filter_students(stats, classes=["5a"])] == ["Muster, Max", "Zeller, Zoe"]
    assert [name for name, _ in filter_students(stats, only_unexcused_late=True, only_unexcused_absent=True)] == [
        "Adam, Ben",
        "Zeller, Zoe",
    ]
    assert [name for name, _ in filter_students(stats, min_unexcused_lates="2")] == ["Zeller, Zoe"]
    assert [name for name, _ in filter_students(stats, min_unexcused_absences=1)] == ["Adam, Ben"]


def test_available_classes_with_custom_column() -> None:
    rows = [{"Gruppe": "7c"}, {"Gruppe": "5a"}, {"Gruppe": ""}, {"Gruppe": "5a"}]
    assert available_classes(rows, ColumnConfig(school_class="Gruppe")) == ["5a", "7c"]


def test_validate_date_range() -> None:
    assert validate_date_range("2024-10-01", "2024-10-31") == (date(2024, 10, 1), date(2024, 10, 31))
    with pytest.raises(DateRangeError, match=START_AFTER_END_MESSAGE):
        validate_date_range("2024-10-31", "2024-10-01")
    with pytest.raises(DateRangeError, match=INVALID_DATE_MESSAGE):
        validate_date_range(None, "2024-10-01")
    with pytest.raises(DateRangeError, match=INVALID_DATE_MESSAGE):
        validate_date_range("31.10.2024", "2024-11-01")


def test_quick_select_ranges() -> None:
    today = date(2024, 10, 16)
    assert quick_select_range("thisWeek", today) == (date(2024, 10, 14), date(2024, 10, 20))
    assert quick_select_range("lastWeek", today) == (date(2024, 10, 7), date(2024, 10, 13))
    assert quick_select_range("lastTwoWeeks", today) == (date(2024, 9, 30), date(2024, 10, 13))
    assert quick_select_range("thisMonth", today) == (date(2024, 10, 1), date(2024, 10, 31))
    assert quick_select_range("lastMonth", today) == (date(2024, 9, 1), date(2024, 9, 30))
    assert quick_select_range("lastMonth", date(2025, 1, 10)) == (date(2024, 12, 1), date(2024, 12, 31))
    assert quick_select_range("schoolYear", today) == (date(2024, 9, 1), date(2025, 7, 31))
    assert quick_select_range("unbekannt", today) is None


def test_default_date_range_is_current_month() -> None:
    assert default_date_range(date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))
