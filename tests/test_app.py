from datetime import date, datetime

import pytest
from dash import Dash

from app import (
    NAME_COLUMN,
    build_analysis_figure,
    build_app,
    build_dashboard_view,
    build_trend_figure,
    build_weekday_figure,
    cell_filter_type,
    decode_upload_contents,
    load_dataset_file,
    student_table_rows,
    summary_table_row,
    table_columns,
)
from analytics import student_ranking
from ingestion import UnsupportedFormatError
from processing import DateRangeError
from session import DatasetSession

NOW = datetime(2024, 10, 16, 10, 0)

CSV_EXPORT = (
    "Langname;Vorname;Beginndatum;Beginnzeit;Endzeit;Abwesenheitsgrund;Text/Grund;Status;Klasse\n"
    "Muster;Max;07.10.2024;08:00;08:20;Verspätung;Bus;nicht entsch.;5a\n"
    "Muster;Max;08.10.2024;08:00;13:00;Krankheit;;;5a\n"
    "Beispiel;Anna;09.10.2024;08:00;15:00;Krankheit;;Attest;5b\n"
    "Zeller;Zoe;14.10.2024;08:00;09:10;;;;5b\n"
)


def loaded_session(tmp_path) -> DatasetSession:
    path = tmp_path / "export.csv"
    path.write_text(CSV_EXPORT, encoding="utf-8")
    return load_dataset_file(path)


def test_load_dataset_file_counts_classes(tmp_path) -> None:
    session = loaded_session(tmp_path)
    assert session.source_name == "export.csv"
    assert len(session.rows) == 4
    assert session.gate.availability().is_available


def test_load_dataset_file_rejects_unknown_extension(tmp_path) -> None:
    path = tmp_path / "export.txt"
    path.write_text(CSV_EXPORT, encoding="utf-8")
    with pytest.raises(UnsupportedFormatError):
        load_dataset_file(path)


def test_build_dashboard_view_filters_and_summarizes(tmp_path) -> None:
    session = loaded_session(tmp_path)
    view = build_dashboard_view(session, "2024-10-01", "2024-10-31", 4, now=NOW)

    assert [name for name, _ in view["filtered"]] == ["Beispiel, Anna", "Muster, Max", "Zeller, Zoe"]
    summary = view["summary"]
    assert summary.student_count == 3
    assert summary.verspaetungen_unentsch == 1
    assert summary.verspaetungen_offen == 1
    assert summary.fehlzeiten_unentsch == 1
    assert summary.fehlzeiten_entsch == 1
    assert summary.verspaetungen_display == "1(0,1,0,0)"
    assert view["class_averages"]["fehlzeiten"] == [0.0, 0.0, 0.5, 0.0]

    only_late = build_dashboard_view(session, "2024-10-01", "2024-10-31", 4, flags=["late"], now=NOW)
    assert [name for name, _ in only_late["filtered"]] == ["Muster, Max"]


def test_build_dashboard_view_rejects_inverted_range(tmp_path) -> None:
    session = loaded_session(tmp_path)
    with pytest.raises(DateRangeError):
        build_dashboard_view(session, "2024-10-31", "2024-10-01", now=NOW)


def test_student_and_summary_rows(tmp_path) -> None:
    session = loaded_session(tmp_path)
    view = build_dashboard_view(session, "2024-10-01", "2024-10-31", 4, classes=["5a"], now=NOW)

    rows = student_table_rows(view)
    assert len(rows) == 1
    assert rows[0]["id"] == "Muster, Max"
    assert rows[0][NAME_COLUMN] == "Muster, Max (1/1)"
    assert rows[0]["sum_fehlzeiten"] == "1(0,1,0,0)"

    summary_row = summary_table_row(view["summary"])
    assert summary_row[NAME_COLUMN] == "Summe (1 Schüler)"
    assert summary_row["fehlzeiten_unentsch"] == 1


def test_table_columns_follow_visible_groups() -> None:
    ids = [col["id"] for col in table_columns(["fehlzeiten"])]
    assert ids == ["Nr", NAME_COLUMN, "Klasse", "fehlzeiten_entsch", "fehlzeiten_unentsch", "fehlzeiten_offen"]
    all_ids = [col["id"] for col in table_columns(["verspaetungen", "fehlzeiten", "stats"])]
    assert "sj_fehlzeiten_ges" in all_ids
    assert "sum_verspaetungen" in all_ids


def test_cell_filter_type() -> None:
    assert cell_filter_type(NAME_COLUMN) == "details"
    assert cell_filter_type("sj_verspaetungen") == "sj_verspaetungen"
    assert cell_filter_type("Klasse") is None


def test_trend_figure_adds_average_lines_only_when_requested(tmp_path) -> None:
    session = loaded_session(tmp_path)
    view = build_dashboard_view(session, "2024-10-01", "2024-10-31", 4, now=NOW)

    plain = build_trend_figure(view["weeks"], view["summary"], view["class_averages"], show_averages=False)
    with_averages = build_trend_figure(view["weeks"], view["summary"], view["class_averages"], show_averages=True)
    assert len(plain.data) == 2
    assert len(with_averages.data) == 4
    assert list(plain.data[0].x) == ["KW 39", "KW 40", "KW 41", "KW 42"]


def test_trend_figure_with_student_averages(tmp_path) -> None:
    session = loaded_session(tmp_path)
    view = build_dashboard_view(session, "2024-10-01", "2024-10-31", 4, now=NOW)

    figure = build_trend_figure(view["weeks"], view["summary"], student_averages=view["student_averages"])
    names = [trace.name for trace in figure.data]
    assert names[2:] == ["Schülerdurchschnitt Verspätungen", "Schülerdurchschnitt Fehlzeiten"]
    assert list(figure.data[3].y) == pytest.approx([0.0, 0.0, 1 / 3, 0.0])


def test_dashboard_view_carries_analytics(tmp_path) -> None:
    session = loaded_session(tmp_path)
    view = build_dashboard_view(session, "2024-10-01", "2024-10-31", 4, now=NOW)

    assert view["critical_patterns"] == []
    overview = view["overview"]
    assert overview.entry_count == 4
    assert overview.top_late_day == "Montag"
    assert overview.top_absence_day == "Dienstag"
    assert view["previous_weekly"]["Muster, Max"].verspaetungen.weekly == [0, 0, 0, 0]
    assert student_ranking(view["filtered"], limit=1)[0]["Schueler"] == "Muster, Max"


def test_analysis_and_weekday_figures(tmp_path) -> None:
    session = loaded_session(tmp_path)
    view = build_dashboard_view(session, "2024-10-01", "2024-10-31", 4, now=NOW)

    figure, regression = build_analysis_figure(view["weeks"], view["summary"], "verspaetungen")
    assert [trace.name for trace in figure.data] == ["Verspätungen (U)", "Gleitender Durchschnitt", "Regression"]
    assert regression.trend_description == "Kein erkennbarer Trend (niedrige Korrelation)"

    weekdays = build_weekday_figure(view["weekday_pattern"])
    assert [trace.name for trace in weekdays.data] == ["Verspätungen (U)", "Fehlzeiten (E)", "Fehlzeiten (U)"]
    assert list(weekdays.data[0].x) == ["Montag", "Dienstag", "Mittwoch", "Donnerstag", "Freitag"]

    empty = build_dashboard_view(session, "2024-10-01", "2024-10-31", 4, search="niemand", now=NOW)
    assert len(build_weekday_figure(empty["weekday_pattern"]).data) == 0


def test_decode_upload_contents() -> None:
    assert decode_upload_contents("data:text/csv;base64,YSxi") == b"a,b"


def test_build_app_without_data() -> None:
    app = build_app(DatasetSession())
    assert isinstance(app, Dash)
    assert app.title == "Anwesenheit Stats"
    assert app.layout is not None
    assert app.layout["analysis-chart"] is not None
    assert app.layout["ranking-table"].data == []


def test_date_picker_defaults_to_current_month() -> None:
    app = build_app(DatasetSession())
    picker = app.layout["date-range"]
    today = date.today()
    assert picker.start_date == today.replace(day=1).isoformat()
