from processing import SchoolYearStats, StudentStats, WeeklySeries, WeeklyStats
from summary import class_average_series, format_weekly_display, summarize


def test_format_weekly_display_lists_newest_week_first() -> None:
    assert format_weekly_display(6, [1, 2, 3]) == "6(3,2,1)"
    assert format_weekly_display(0, []) == "0()"


def test_summarize_adds_counts_of_filtered_students() -> None:
    students = [
        ("A, A", StudentStats(verspaetungen_unentsch=2, verspaetungen_entsch=1)),
        ("B, B", StudentStats()),
        ("C, C", StudentStats(verspaetungen_unentsch=5, verspaetungen_offen=2)),
    ]
    totals = summarize(students, {}, {}, 4)

    assert totals.student_count == 3
    assert totals.verspaetungen_unentsch == 7
    assert totals.fehlzeiten_unentsch == 0
    assert totals.verspaetungen_entsch == 1
    assert totals.verspaetungen_offen == 2


def test_summarize_treats_missing_records_as_zero() -> None:
    students = [("A, A", StudentStats()), ("B, B", StudentStats())]
    school_year = {"A, A": SchoolYearStats(verspaetungen_unentsch=3, fehlzeiten_unentsch=1, fehlzeiten_gesamt=4)}
    weekly = {
        "A, A": WeeklyStats(
            verspaetungen=WeeklySeries(total=6, weekly=[1, 2, 3]),
            fehlzeiten=WeeklySeries(total=1, weekly=[0, 0, 1]),
        )
    }
    totals = summarize(students, school_year, weekly, 3)

    assert totals.sj_verspaetungen == 3
    assert totals.sj_fehlzeiten == 1
    assert totals.sj_fehlzeiten_ges == 4
    assert totals.weekly_verspaetungen == [1, 2, 3]
    assert totals.verspaetungen_display == "6(3,2,1)"
    assert totals.fehlzeiten_display == "1(1,0,0)"


def test_summarize_ignores_weeks_beyond_selection() -> None:
    weekly = {
        "A, A": WeeklyStats(
            verspaetungen=WeeklySeries(total=6, weekly=[1, 1, 1, 1, 1, 1]),
            fehlzeiten=WeeklySeries(total=0, weekly=[0, 0]),
        )
    }
    totals = summarize([("A, A", StudentStats())], {}, weekly, 4)

    assert totals.weekly_verspaetungen == [1, 1, 1, 1]
    assert totals.weekly_fehlzeiten == [0, 0, 0, 0]


def test_empty_selection_gives_zero_summary() -> None:
    totals = summarize([], {}, {}, 2)
    assert totals.student_count == 0
    assert totals.verspaetungen_display == "0(0,0)"


def test_class_average_series_divides_by_class_count() -> None:
    weekly = {
        "A, A": WeeklyStats(
            verspaetungen=WeeklySeries(total=2, weekly=[2, 0]),
            fehlzeiten=WeeklySeries(total=1, weekly=[1, 0]),
        ),
        "B, B": WeeklyStats(
            verspaetungen=WeeklySeries(total=4, weekly=[0, 4]),
            fehlzeiten=WeeklySeries(total=0, weekly=[0, 0]),
        ),
    }
    averages = class_average_series(weekly, 2, 2)
    assert averages == {"verspaetungen": [1.0, 2.0], "fehlzeiten": [0.5, 0.0]}
    assert class_average_series(weekly, 2, 0) == {"verspaetungen": [0.0, 0.0], "fehlzeiten": [0.0, 0.0]}
