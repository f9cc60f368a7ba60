from __future__ import annotations

import argparse
import base64
import csv
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from dash import Dash, Input, Output, State, ctx, dash_table, dcc, html, no_update

from analytics import (
    RANKING_SIZE,
    AnalyticsOverview,
    CriticalPattern,
    RegressionResult,
    analytics_overview,
    find_critical_patterns,
    linear_regression,
    moving_average,
    split_weekly_window,
    student_average_series,
    student_ranking,
    weekday_pattern,
)
from exports import (
    EXPORT_COLUMNS,
    EXPORT_SHEET_NAME,
    build_export_html,
    build_export_rows,
    detail_title,
    entry_status_color,
    export_filename,
    numbered_entry_lines,
)
from ingestion import UPLOAD_ACCEPT, IngestionError, process_upload, read_rows
from processing import (
    QUICK_SELECT_OPTIONS,
    DateRangeError,
    Week,
    available_classes,
    calculate_school_year_stats,
    calculate_weekly_stats,
    default_date_range,
    filter_students,
    last_n_weeks,
    parse_week_count,
    process_data,
    quick_select_range,
    student_details,
    validate_date_range,
)
from session import DatasetSession
from settings import DEFAULT_WEEKS, WEEK_OPTIONS, ColumnConfig, setup_logging
from summary import SummaryTotals, class_average_series, format_weekly_display, summarize

APP_TITLE = "Anwesenheit Stats"
NO_FILE_LABEL = "Keine Datei geladen"
COLUMN_GROUP_OPTIONS = [
    ("Verspätungen", "verspaetungen"),
    ("Fehlzeiten", "fehlzeiten"),
    ("Statistik (Schuljahr / Wochen)", "stats"),
]
DEFAULT_COLUMN_GROUPS = ["verspaetungen", "fehlzeiten", "stats"]
FLAG_OPTIONS = [
    ("Nur mit unentsch. Verspätungen", "late"),
    ("Nur mit unentsch. Fehlzeiten", "absent"),
]
NAME_COLUMN = "Schueler"

logger = logging.getLogger(__name__)


def decode_upload_contents(contents: str) -> bytes:
    _, content_string = contents.split(",", maxsplit=1)
    return base64.b64decode(content_string)


def resolve_data_path(explicit_path: str) -> Path:
    path = Path(explicit_path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Export file not found: {path}")
    return path


def load_dataset_file(path: Path, columns: ColumnConfig | None = None) -> DatasetSession:
    rows = read_rows(path.name, path.read_bytes, columns)
    session = DatasetSession()
    session.load(rows, path.name)
    return session


def build_dashboard_view(
    session: DatasetSession,
    start: str | date | None,
    end: str | date | None,
    selected_weeks: int | str = DEFAULT_WEEKS,
    search: str | None = None,
    classes: list[str] | None = None,
    flags: list[str] | None = None,
    min_unexcused_lates: int | str | None = None,
    min_unexcused_absences: int | str | None = None,
    columns: ColumnConfig | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    start_day, end_day = validate_date_range(start, end)
    now = now or datetime.now()
    week_count = parse_week_count(selected_weeks)

    processed = process_data(session.rows, start_day, end_day, columns, now)
    school_year = calculate_school_year_stats(session.rows, columns, now)
    # twice the window so the critical-pattern check can compare with the weeks before
    window = calculate_weekly_stats(session.rows, 2 * week_count, columns, now)
    weekly, previous_weekly = split_weekly_window(window, week_count)

    flag_set = set(flags or [])
    filtered = filter_students(
        processed.student_stats,
        search=search,
        classes=classes,
        only_unexcused_late="late" in flag_set,
        only_unexcused_absent="absent" in flag_set,
        min_unexcused_lates=min_unexcused_lates,
        min_unexcused_absences=min_unexcused_absences,
    )
    availability = session.gate.availability()
    weekdays = weekday_pattern(processed.detailed_stats, [student for student, _ in filtered])
    return {
        "start": start_day,
        "end": end_day,
        "week_count": week_count,
        "weeks": last_n_weeks(week_count, now),
        "processed": processed,
        "school_year": school_year,
        "weekly": weekly,
        "filtered": filtered,
        "summary": summarize(filtered, school_year, weekly, week_count),
        "availability": availability,
        "class_averages": class_average_series(weekly, week_count, availability.class_count),
        "student_averages": student_average_series(weekly, week_count),
        "previous_weekly": previous_weekly,
        "critical_patterns": find_critical_patterns(
            filtered, processed.student_stats, weekly, previous_weekly, week_count
        ),
        "weekday_pattern": weekdays,
        "overview": analytics_overview(filtered, weekdays),
    }


def table_columns(visible_groups: list[str] | None) -> list[dict[str, str]]:
    groups = set(visible_groups or [])
    cols = [
        {"name": "#", "id": "Nr"},
        {"name": "Name (U-V/U-F)", "id": NAME_COLUMN},
        {"name": "Klasse", "id": "Klasse"},
    ]
    if "verspaetungen" in groups:
        cols += [
            {"name": "Verspätungen E", "id": "verspaetungen_entsch"},
            {"name": "Verspätungen U", "id": "verspaetungen_unentsch"},
            {"name": "Verspätungen O", "id": "verspaetungen_offen"},
        ]
        if "stats" in groups:
            cols += [
                {"name": "SJ Verspätungen U", "id": "sj_verspaetungen"},
                {"name": "Verspätungen Wochen", "id": "sum_verspaetungen"},
            ]
    if "fehlzeiten" in groups:
        cols += [
            {"name": "Fehlzeiten E", "id": "fehlzeiten_entsch"},
            {"name": "Fehlzeiten U", "id": "fehlzeiten_unentsch"},
            {"name": "Fehlzeiten O", "id": "fehlzeiten_offen"},
        ]
        if "stats" in groups:
            cols += [
                {"name": "SJ Fehlzeiten U", "id": "sj_fehlzeiten"},
                {"name": "SJ Fehlzeiten Ges.", "id": "sj_fehlzeiten_ges"},
                {"name": "Fehlzeiten Wochen", "id": "sum_fehlzeiten"},
            ]
    return cols


def cell_filter_type(column_id: str | None) -> str | None:
    if column_id == NAME_COLUMN:
        return "details"
    if column_id in {"Nr", "Klasse", None}:
        return None
    return column_id


def student_table_rows(view: dict[str, Any]) -> list[dict[str, Any]]:
    week_count: int = view["week_count"]
    rows: list[dict[str, Any]] = []
    for index, (student, stats) in enumerate(view["filtered"]):
        year = view["school_year"].get(student)
        weekly = view["weekly"].get(student)
        rows.append(
            {
                "id": student,
                "Nr": index + 1,
                NAME_COLUMN: f"{student} ({stats.verspaetungen_unentsch}/{stats.fehlzeiten_unentsch})",
                "Klasse": stats.klasse,
                "verspaetungen_entsch": stats.verspaetungen_entsch,
                "verspaetungen_unentsch": stats.verspaetungen_unentsch,
                "verspaetungen_offen": stats.verspaetungen_offen,
                "fehlzeiten_entsch": stats.fehlzeiten_entsch,
                "fehlzeiten_unentsch": stats.fehlzeiten_unentsch,
                "fehlzeiten_offen": stats.fehlzeiten_offen,
                "sj_verspaetungen": year.verspaetungen_unentsch if year else 0,
                "sj_fehlzeiten": year.fehlzeiten_unentsch if year else 0,
                "sj_fehlzeiten_ges": year.fehlzeiten_gesamt if year else 0,
                "sum_verspaetungen": format_weekly_display(weekly.verspaetungen.total, weekly.verspaetungen.weekly)
                if weekly
                else format_weekly_display(0, [0] * week_count),
                "sum_fehlzeiten": format_weekly_display(weekly.fehlzeiten.total, weekly.fehlzeiten.weekly)
                if weekly
                else format_weekly_display(0, [0] * week_count),
            }
        )
    return rows


def summary_table_row(summary: SummaryTotals) -> dict[str, Any]:
    return {
        "Nr": "#",
        NAME_COLUMN: f"Summe ({summary.student_count} Schüler)",
        "Klasse": "",
        "verspaetungen_entsch": summary.verspaetungen_entsch,
        "verspaetungen_unentsch": summary.verspaetungen_unentsch,
        "verspaetungen_offen": summary.verspaetungen_offen,
        "fehlzeiten_entsch": summary.fehlzeiten_entsch,
        "fehlzeiten_unentsch": summary.fehlzeiten_unentsch,
        "fehlzeiten_offen": summary.fehlzeiten_offen,
        "sj_verspaetungen": summary.sj_verspaetungen,
        "sj_fehlzeiten": summary.sj_fehlzeiten,
        "sj_fehlzeiten_ges": summary.sj_fehlzeiten_ges,
        "sum_verspaetungen": summary.verspaetungen_display,
        "sum_fehlzeiten": summary.fehlzeiten_display,
    }


def empty_trend_figure(title: str) -> go.Figure:
    fig = go.Figure()
    fig.update_layout(
        title=title,
        height=360,
        xaxis_title="Kalenderwoche",
        yaxis_title="Anzahl",
        margin={"l": 10, "r": 10, "t": 56, "b": 36},
    )
    return fig


def apply_compact_figure_layout(fig: go.Figure, height: int) -> go.Figure:
    fig.update_layout(
        height=height,
        margin={"l": 10, "r": 10, "t": 64, "b": 72},
        title={"x": 0.01, "xanchor": "left"},
        legend={"orientation": "h", "yanchor": "top", "y": -0.2, "xanchor": "left", "x": 0},
    )
    return fig


def build_trend_figure(
    weeks: list[Week],
    summary: SummaryTotals,
    class_averages: dict[str, list[float]] | None = None,
    show_averages: bool = False,
    student_averages: dict[str, list[float]] | None = None,
) -> go.Figure:
    if not weeks or summary.student_count == 0:
        return empty_trend_figure("Unentschuldigte Abwesenheiten pro Woche")

    labels = [week.label for week in weeks]
    fig = go.Figure()
    fig.add_trace(go.Bar(x=labels, y=summary.weekly_verspaetungen, name="Verspätungen (U)", marker_color="#ef6c00"))
    fig.add_trace(go.Bar(x=labels, y=summary.weekly_fehlzeiten, name="Fehlzeiten (U)", marker_color="#c62828"))
    if show_averages and class_averages:
        fig.add_trace(
            go.Scatter(
                x=labels,
                y=class_averages["verspaetungen"],
                name="Klassendurchschnitt Verspätungen",
                mode="lines+markers",
                line={"dash": "dash", "color": "#ef6c00"},
            )
        )
        fig.add_trace(
            go.Scatter(
                x=labels,
                y=class_averages["fehlzeiten"],
                name="Klassendurchschnitt Fehlzeiten",
                mode="lines+markers",
                line={"dash": "dash", "color": "#c62828"},
            )
        )
    if student_averages:
        for kind, label, color in (("verspaetungen", "Verspätungen", "#ef6c00"), ("fehlzeiten", "Fehlzeiten", "#c62828")):
            fig.add_trace(
                go.Scatter(
                    x=labels,
                    y=student_averages[kind],
                    name=f"Schülerdurchschnitt {label}",
                    mode="lines",
                    line={"dash": "dot", "color": color},
                )
            )
    fig.update_layout(
        title="Unentschuldigte Abwesenheiten pro Woche",
        barmode="group",
        xaxis_title="Kalenderwoche",
        yaxis_title="Anzahl",
    )
    return apply_compact_figure_layout(fig, 380)


def build_analysis_figure(
    weeks: list[Week], summary: SummaryTotals, kind: str = "fehlzeiten"
) -> tuple[go.Figure, RegressionResult]:
    """Weekly unexcused counts with moving average, regression line and outliers."""
    values = summary.weekly_verspaetungen if kind == "verspaetungen" else summary.weekly_fehlzeiten
    label = "Verspätungen (U)" if kind == "verspaetungen" else "Fehlzeiten (U)"
    result = linear_regression(values)
    title = f"Trend {label}"
    if not weeks or summary.student_count == 0:
        return empty_trend_figure(title), result

    labels = [week.label for week in weeks]
    fig = go.Figure()
    fig.add_trace(go.Bar(x=labels, y=values, name=label, marker_color="#90a4ae"))
    fig.add_trace(
        go.Scatter(
            x=labels,
            y=moving_average(values),
            name="Gleitender Durchschnitt",
            mode="lines+markers",
            line={"color": "#1565c0"},
        )
    )
    if result.r_squared > 0:
        fig.add_trace(
            go.Scatter(
                x=labels,
                y=result.line(len(values)),
                name="Regression",
                mode="lines",
                line={"dash": "dash", "color": "#6a1b9a"},
            )
        )
    if result.outliers:
        fig.add_trace(
            go.Scatter(
                x=[labels[i] for i in result.outliers],
                y=[values[i] for i in result.outliers],
                name="Ausreißer",
                mode="markers",
                marker={"color": "#c62828", "size": 11, "symbol": "x"},
            )
        )
    fig.update_layout(title=title, xaxis_title="Kalenderwoche", yaxis_title="Anzahl")
    return apply_compact_figure_layout(fig, 340), result


def trend_description_text(result: RegressionResult) -> str:
    text = result.trend_description
    if result.prediction is not None:
        text += f", Prognose nächste Woche: {max(result.prediction, 0):.1f}"
    return text


def build_weekday_figure(pattern: pd.DataFrame) -> go.Figure:
    if pattern.empty or not pattern[["verspaetungen", "fehlzeiten_gesamt"]].to_numpy().any():
        return empty_trend_figure("Abwesenheiten nach Wochentag")
    fig = px.bar(
        pattern,
        x="Tag",
        y=["verspaetungen", "fehlzeiten_entsch", "fehlzeiten_unentsch"],
        barmode="group",
        title="Abwesenheiten nach Wochentag",
        labels={"value": "Anzahl", "variable": "", "Tag": "Wochentag"},
        color_discrete_sequence=["#ef6c00", "#2f7d32", "#c62828"],
    )
    names = {
        "verspaetungen": "Verspätungen (U)",
        "fehlzeiten_entsch": "Fehlzeiten (E)",
        "fehlzeiten_unentsch": "Fehlzeiten (U)",
    }
    fig.for_each_trace(lambda trace: trace.update(name=names.get(trace.name, trace.name)))
    return apply_compact_figure_layout(fig, 320)


def overview_items(overview: AnalyticsOverview) -> list[tuple[str, str]]:
    return [
        ("Einträge im Zeitraum", str(overview.entry_count)),
        ("Unentschuldigt", f"{overview.unexcused_rate:.1f} %"),
        ("Anteil Verspätungen", f"{overview.late_rate:.1f} %"),
        ("Auffällige Schüler", str(overview.critical_students)),
        ("Häufigster Verspätungstag", overview.top_late_day or "-"),
        ("Häufigster Fehltag (U)", overview.top_absence_day or "-"),
    ]


def render_overview(overview: AnalyticsOverview) -> list[Any]:
    return [
        html.Div(
            style={"border": "1px solid #eee", "borderRadius": "4px", "padding": "6px 10px", "minWidth": "150px"},
            children=[
                html.Div(label, style={"color": "#555", "fontSize": "12px"}),
                html.Div(value, style={"fontSize": "18px", "fontWeight": "600"}),
            ],
        )
        for label, value in overview_items(overview)
    ]


def render_critical_patterns(patterns: list[CriticalPattern]) -> list[Any]:
    if not patterns:
        return [html.Div("Keine auffälligen Muster im gewählten Zeitraum.", style={"color": "#666"})]
    return [
        html.Div(
            style={"marginBottom": "6px"},
            children=[
                html.Strong(f"{pattern.student} ({pattern.klasse})" if pattern.klasse else pattern.student),
                html.Ul([html.Li(reason) for reason in pattern.reasons], style={"margin": "2px 0", "color": "#c62828"}),
            ],
        )
        for pattern in patterns
    ]


def render_details(view: dict[str, Any], expanded: dict[str, str] | None) -> list[Any]:
    if not expanded:
        return [html.Div("Zelle in der Tabelle anklicken, um Details anzuzeigen.", style={"color": "#666"})]

    visible = {student for student, _ in view["filtered"]}
    blocks: list[Any] = []
    for student in sorted(expanded, key=str.casefold):
        if student not in visible:
            continue
        filter_type = expanded[student]
        entries = student_details(view["processed"], student, filter_type, view["weeks"])
        title = f"{student}: {detail_title(filter_type, view['week_count'])}"
        if not entries:
            lines: list[Any] = [html.Div("Keine Einträge", style={"color": "#666", "fontStyle": "italic"})]
        else:
            lines = [
                html.Div(text, style={"color": entry_status_color(entry), "padding": "1px 0"})
                for entry, text in zip(entries, numbered_entry_lines(entries))
            ]
        blocks.append(
            html.Div(
                style={"marginBottom": "10px"},
                children=[html.H5(title, style={"margin": "0 0 4px 0"}), html.Div(lines, style={"paddingLeft": "12px"})],
            )
        )
    return blocks or [html.Div("Keine geöffneten Details in der aktuellen Auswahl.", style={"color": "#666"})]


def average_toggle_options(session: DatasetSession) -> list[dict[str, Any]]:
    availability = session.gate.availability()
    return [
        {
            "label": html.Span("Klassendurchschnitt anzeigen", title=availability.tooltip),
            "value": "show",
            "disabled": not availability.is_available,
        },
        {"label": "Schülerdurchschnitt anzeigen", "value": "students"},
    ]


def build_app(session: DatasetSession, columns: ColumnConfig | None = None, initial_weeks: int = DEFAULT_WEEKS) -> Dash:
    columns = columns or ColumnConfig()
    default_start, default_end = default_date_range()

    app = Dash(__name__)
    app.title = APP_TITLE

    section_style = {
        "border": "1px solid #ddd",
        "borderRadius": "4px",
        "padding": "10px",
        "marginBottom": "10px",
        "background": "#fff",
    }
    label_style = {"fontWeight": "600", "fontSize": "13px", "marginBottom": "4px", "display": "block"}
    table_cell_style = {"fontFamily": "Segoe UI, Arial, sans-serif", "fontSize": "13px", "padding": "4px 6px"}
    table_header_style = {"fontWeight": "600", "background": "#f8f8f8"}

    app.layout = html.Div(
        style={
            "fontFamily": "Segoe UI, Arial, sans-serif",
            "padding": "10px 14px",
            "maxWidth": "1700px",
            "margin": "0 auto",
            "fontSize": "14px",
        },
        children=[
            dcc.Store(id="dataset-store", data=session.to_store()),
            dcc.Store(id="expanded-store", data={}),
            dcc.Download(id="table-download"),
            dcc.Download(id="dashboard-html-download"),
            html.Div(
                style={
                    "display": "flex",
                    "justifyContent": "space-between",
                    "alignItems": "flex-end",
                    "flexWrap": "wrap",
                    "gap": "10px",
                    "marginBottom": "8px",
                },
                children=[
                    html.Div(
                        children=[
                            html.H1(APP_TITLE, style={"margin": "0", "fontSize": "28px", "lineHeight": "1.1"}),
                            html.Div(
                                f"Datei: {session.source_name}" if session.loaded else NO_FILE_LABEL,
                                id="source-label",
                                style={"color": "#555", "marginTop": "2px"},
                            ),
                        ]
                    ),
                    html.Div(
                        style={"display": "flex", "flexDirection": "column", "alignItems": "flex-end", "gap": "4px"},
                        children=[
                            html.Div(
                                style={"display": "flex", "gap": "6px"},
                                children=[
                                    dcc.Upload(
                                        id="upload-data",
                                        children=html.Button("Export hochladen (.csv, .xlsx, .xls)"),
                                        accept=UPLOAD_ACCEPT,
                                        multiple=False,
                                    ),
                                    html.Button("Zurücksetzen", id="reset-btn"),
                                ],
                            ),
                            html.Div(id="upload-status", style={"color": "#444", "fontSize": "13px"}),
                        ],
                    ),
                ],
            ),
            html.Div(
                style=section_style,
                children=[
                    html.Div(
                        style={"display": "flex", "gap": "10px", "flexWrap": "wrap", "alignItems": "flex-end"},
                        children=[
                            html.Div(
                                style={"minWidth": "280px"},
                                children=[
                                    html.Label("Zeitraum:", style=label_style),
                                    dcc.DatePickerRange(
                                        id="date-range",
                                        start_date=default_start.isoformat(),
                                        end_date=default_end.isoformat(),
                                        display_format="DD.MM.YYYY",
                                        first_day_of_week=1,
                                    ),
                                ],
                            ),
                            html.Div(
                                style={"minWidth": "180px", "flex": "1"},
                                children=[
                                    html.Label("Schnellauswahl:", style=label_style),
                                    dcc.Dropdown(
                                        id="quick-select",
                                        options=[{"label": label, "value": value} for label, value in QUICK_SELECT_OPTIONS],
                                        value=None,
                                        placeholder="-- Auswählen --",
                                    ),
                                ],
                            ),
                            html.Div(
                                style={"minWidth": "140px"},
                                children=[
                                    html.Label("Wochen zurück:", style=label_style),
                                    dcc.Dropdown(
                                        id="weeks-select",
                                        options=[
                                            {"label": f"{n} Woche" if n == 1 else f"{n} Wochen", "value": n}
                                            for n in WEEK_OPTIONS
                                        ],
                                        value=initial_weeks,
                                        clearable=False,
                                    ),
                                ],
                            ),
                            html.Div(
                                style={"minWidth": "200px", "flex": "1"},
                                children=[
                                    html.Label("Suche:", style=label_style),
                                    dcc.Input(
                                        id="search-input",
                                        type="text",
                                        value="",
                                        placeholder="Name suchen",
                                        debounce=True,
                                        style={"width": "100%"},
                                    ),
                                ],
                            ),
                            html.Div(
                                style={"minWidth": "220px", "flex": "2"},
                                children=[
                                    html.Label("Klassen:", style=label_style),
                                    dcc.Dropdown(
                                        id="class-filter",
                                        options=[],
                                        value=[],
                                        multi=True,
                                        placeholder="Alle Klassen",
                                    ),
                                ],
                            ),
                        ],
                    ),
                    html.Div(
                        style={
                            "display": "flex",
                            "gap": "14px",
                            "flexWrap": "wrap",
                            "alignItems": "flex-end",
                            "marginTop": "8px",
                        },
                        children=[
                            dcc.Checklist(
                                id="flag-filter",
                                options=[{"label": label, "value": value} for label, value in FLAG_OPTIONS],
                                value=[],
                                inline=True,
                            ),
                            html.Div(
                                children=[
                                    html.Label("Min. unentsch. Verspätungen:", style=label_style),
                                    dcc.Input(id="min-lates-input", type="number", min=0, value=None, debounce=True),
                                ]
                            ),
                            html.Div(
                                children=[
                                    html.Label("Min. unentsch. Fehlzeiten:", style=label_style),
                                    dcc.Input(id="min-absences-input", type="number", min=0, value=None, debounce=True),
                                ]
                            ),
                            html.Div(
                                children=[
                                    html.Label("Spalten:", style=label_style),
                                    dcc.Checklist(
                                        id="column-groups",
                                        options=[{"label": label, "value": value} for label, value in COLUMN_GROUP_OPTIONS],
                                        value=DEFAULT_COLUMN_GROUPS.copy(),
                                        inline=True,
                                    ),
                                ]
                            ),
                            html.Button("Alle Details schließen", id="close-details-btn"),
                        ],
                    ),
                    html.Div(id="range-error", style={"color": "#c62828", "marginTop": "6px", "fontSize": "13px"}),
                ],
            ),
            html.Div(
                style=section_style,
                children=[
                    dash_table.DataTable(
                        id="student-table",
                        data=[],
                        columns=table_columns(DEFAULT_COLUMN_GROUPS),
                        sort_action="native",
                        page_action="none",
                        fixed_rows={"headers": True},
                        style_table={"maxHeight": "620px", "overflowY": "auto"},
                        style_cell=table_cell_style,
                        style_header=table_header_style,
                        style_data_conditional=[
                            {"if": {"column_id": c}, "color": "#2f7d32"}
                            for c in ("verspaetungen_entsch", "fehlzeiten_entsch")
                        ]
                        + [
                            {"if": {"column_id": c}, "color": "#c62828"}
                            for c in ("verspaetungen_unentsch", "fehlzeiten_unentsch", "sj_verspaetungen", "sj_fehlzeiten")
                        ]
                        + [
                            {"if": {"column_id": c}, "color": "#b58900"}
                            for c in ("verspaetungen_offen", "fehlzeiten_offen")
                        ],
                    ),
                    dash_table.DataTable(
                        id="summary-table",
                        data=[],
                        columns=table_columns(DEFAULT_COLUMN_GROUPS),
                        style_cell={**table_cell_style, "fontStyle": "italic"},
                        style_header={"display": "none"},
                    ),
                ],
            ),
            html.Div(
                style=section_style,
                children=[
                    html.H4("Details", style={"margin": "0 0 6px 0"}),
                    html.Div(id="details-panel"),
                ],
            ),
            html.Div(
                style=section_style,
                children=[
                    dcc.Checklist(id="average-toggle", options=average_toggle_options(session), value=[]),
                    dcc.Graph(id="trend-chart"),
                ],
            ),
            html.Div(
                style=section_style,
                children=[
                    html.H4("Analyse", style={"margin": "0 0 6px 0"}),
                    html.Div(id="analysis-overview", style={"display": "flex", "gap": "8px", "flexWrap": "wrap"}),
                    html.H5("Auffällige Schüler", style={"margin": "10px 0 4px 0"}),
                    html.Div(id="critical-patterns", style={"maxHeight": "320px", "overflowY": "auto"}),
                    dcc.RadioItems(
                        id="analysis-kind",
                        options=[
                            {"label": "Fehlzeiten (U)", "value": "fehlzeiten"},
                            {"label": "Verspätungen (U)", "value": "verspaetungen"},
                        ],
                        value="fehlzeiten",
                        inline=True,
                        style={"marginTop": "10px"},
                    ),
                    dcc.Graph(id="analysis-chart"),
                    html.Div(id="trend-description", style={"color": "#444", "fontSize": "13px"}),
                    dcc.Graph(id="weekday-chart"),
                    html.Div(
                        style={"display": "flex", "gap": "8px", "alignItems": "center", "margin": "8px 0 4px 0"},
                        children=[
                            html.H5(f"Top {RANKING_SIZE} Schüler", style={"margin": "0"}),
                            dcc.Dropdown(
                                id="ranking-sort",
                                options=[
                                    {"label": "Fehlzeiten (U)", "value": "fehlzeiten_unentsch"},
                                    {"label": "Fehlzeiten gesamt", "value": "fehlzeiten_gesamt"},
                                    {"label": "Verspätungen", "value": "verspaetungen"},
                                ],
                                value="fehlzeiten_unentsch",
                                clearable=False,
                                style={"width": "220px"},
                            ),
                        ],
                    ),
                    dash_table.DataTable(
                        id="ranking-table",
                        data=[],
                        columns=[
                            {"name": "Schüler", "id": "Schueler"},
                            {"name": "Klasse", "id": "Klasse"},
                            {"name": "Fehlzeiten U", "id": "fehlzeiten_unentsch"},
                            {"name": "Fehlzeiten gesamt", "id": "fehlzeiten_gesamt"},
                            {"name": "Verspätungen", "id": "verspaetungen"},
                        ],
                        style_cell=table_cell_style,
                        style_header=table_header_style,
                    ),
                ],
            ),
            html.Div(
                style=section_style,
                children=[
                    html.Div(
                        style={"display": "flex", "gap": "8px", "flexWrap": "wrap"},
                        children=[
                            html.Button("Export Excel", id="export-xlsx-btn"),
                            html.Button("Export CSV", id="export-csv-btn"),
                            html.Button("Export HTML", id="export-html-btn"),
                        ],
                    ),
                    html.Div(id="export-status", style={"marginTop": "6px", "color": "#444", "fontSize": "13px"}),
                ],
            ),
        ],
    )

    @app.callback(
        Output("dataset-store", "data"),
        Output("source-label", "children"),
        Output("upload-status", "children"),
        Input("upload-data", "contents"),
        Input("reset-btn", "n_clicks"),
        State("upload-data", "filename"),
        State("date-range", "start_date"),
        State("date-range", "end_date"),
        prevent_initial_call=True,
    )
    def handle_upload(
        contents: str | None,
        reset_clicks: int | None,
        filename: str | None,
        start_date: str | None,
        end_date: str | None,
    ):
        _ = reset_clicks
        if ctx.triggered_id == "reset-btn":
            cleared = DatasetSession()
            return cleared.to_store(), NO_FILE_LABEL, ""
        if not contents:
            return no_update, no_update, no_update

        outcome: dict[str, Any] = {}
        process_upload(
            filename,
            lambda: decode_upload_contents(contents),
            start_date,
            end_date,
            on_rows=lambda rows: outcome.update(rows=rows),
            on_error=lambda message: outcome.update(error=message),
            columns=columns,
        )
        if "error" in outcome:
            return no_update, no_update, outcome["error"]

        loaded = DatasetSession()
        loaded.load(outcome["rows"], filename)
        class_count = loaded.gate.class_count
        return (
            loaded.to_store(),
            f"Datei: {loaded.source_name}",
            f"{len(loaded.rows)} Zeilen geladen, {class_count} Klasse(n).",
        )

    @app.callback(
        Output("date-range", "start_date"),
        Output("date-range", "end_date"),
        Input("quick-select", "value"),
        Input("reset-btn", "n_clicks"),
        prevent_initial_call=True,
    )
    def update_date_range(quick_value: str | None, reset_clicks: int | None):
        _ = reset_clicks
        if ctx.triggered_id == "reset-btn":
            start, end = default_date_range()
            return start.isoformat(), end.isoformat()
        selected = quick_select_range(quick_value)
        if selected is None:
            return no_update, no_update
        return selected[0].isoformat(), selected[1].isoformat()

    @app.callback(
        Output("quick-select", "value"),
        Output("weeks-select", "value"),
        Output("search-input", "value"),
        Output("flag-filter", "value"),
        Output("min-lates-input", "value"),
        Output("min-absences-input", "value"),
        Output("column-groups", "value"),
        Input("reset-btn", "n_clicks"),
        prevent_initial_call=True,
    )
    def reset_filters(reset_clicks: int | None):
        _ = reset_clicks
        return None, DEFAULT_WEEKS, "", [], None, None, DEFAULT_COLUMN_GROUPS.copy()

    @app.callback(
        Output("class-filter", "options"),
        Output("class-filter", "value"),
        Output("average-toggle", "options"),
        Output("average-toggle", "value"),
        Input("dataset-store", "data"),
    )
    def update_class_options(dataset: dict[str, Any] | None):
        current = DatasetSession.from_store(dataset)
        class_values = available_classes(current.rows, columns)
        return [{"label": c, "value": c} for c in class_values], [], average_toggle_options(current), []

    @app.callback(
        Output("expanded-store", "data"),
        Output("student-table", "active_cell"),
        Input("student-table", "active_cell"),
        Input("close-details-btn", "n_clicks"),
        Input("dataset-store", "data"),
        State("expanded-store", "data"),
        prevent_initial_call=True,
    )
    def update_expanded(
        active_cell: dict[str, Any] | None,
        close_clicks: int | None,
        dataset: dict[str, Any] | None,
        expanded: dict[str, str] | None,
    ):
        _ = close_clicks, dataset
        if ctx.triggered_id in ("close-details-btn", "dataset-store"):
            return {}, None
        if not active_cell:
            return no_update, no_update
        student = active_cell.get("row_id")
        filter_type = cell_filter_type(active_cell.get("column_id"))
        if not student or not filter_type:
            return no_update, None
        updated = dict(expanded or {})
        if updated.get(student) == filter_type:
            del updated[student]
        else:
            updated[student] = filter_type
        return updated, None

    @app.callback(
        Output("student-table", "data"),
        Output("student-table", "columns"),
        Output("summary-table", "data"),
        Output("summary-table", "columns"),
        Output("details-panel", "children"),
        Output("trend-chart", "figure"),
        Output("range-error", "children"),
        Input("dataset-store", "data"),
        Input("date-range", "start_date"),
        Input("date-range", "end_date"),
        Input("weeks-select", "value"),
        Input("search-input", "value"),
        Input("class-filter", "value"),
        Input("flag-filter", "value"),
        Input("min-lates-input", "value"),
        Input("min-absences-input", "value"),
        Input("column-groups", "value"),
        Input("expanded-store", "data"),
        Input("average-toggle", "value"),
    )
    def update_dashboard(
        dataset: dict[str, Any] | None,
        start_date: str | None,
        end_date: str | None,
        selected_weeks: int | None,
        search: str | None,
        selected_classes: list[str] | None,
        flags: list[str] | None,
        min_lates: int | None,
        min_absences: int | None,
        visible_groups: list[str] | None,
        expanded: dict[str, str] | None,
        average_toggle: list[str] | None,
    ):
        current = DatasetSession.from_store(dataset)
        cols = table_columns(visible_groups)
        empty_fig = empty_trend_figure("Unentschuldigte Abwesenheiten pro Woche")
        if not current.loaded or not start_date or not end_date:
            return [], cols, [], cols, [], empty_fig, ""

        try:
            view = build_dashboard_view(
                current,
                start_date,
                end_date,
                selected_weeks,
                search,
                selected_classes,
                flags,
                min_lates,
                min_absences,
                columns,
            )
        except DateRangeError as exc:
            return [], cols, [], cols, [], empty_fig, str(exc)

        toggles = average_toggle or []
        show_averages = "show" in toggles and view["availability"].is_available
        student_averages = view["student_averages"] if "students" in toggles else None
        figure = build_trend_figure(
            view["weeks"], view["summary"], view["class_averages"], show_averages, student_averages
        )
        return (
            student_table_rows(view),
            cols,
            [summary_table_row(view["summary"])],
            cols,
            render_details(view, expanded),
            figure,
            "",
        )

    @app.callback(
        Output("analysis-overview", "children"),
        Output("critical-patterns", "children"),
        Output("analysis-chart", "figure"),
        Output("trend-description", "children"),
        Output("weekday-chart", "figure"),
        Output("ranking-table", "data"),
        Input("dataset-store", "data"),
        Input("date-range", "start_date"),
        Input("date-range", "end_date"),
        Input("weeks-select", "value"),
        Input("search-input", "value"),
        Input("class-filter", "value"),
        Input("flag-filter", "value"),
        Input("min-lates-input", "value"),
        Input("min-absences-input", "value"),
        Input("analysis-kind", "value"),
        Input("ranking-sort", "value"),
    )
    def update_analysis(
        dataset: dict[str, Any] | None,
        start_date: str | None,
        end_date: str | None,
        selected_weeks: int | None,
        search: str | None,
        selected_classes: list[str] | None,
        flags: list[str] | None,
        min_lates: int | None,
        min_absences: int | None,
        analysis_kind: str | None,
        ranking_sort: str | None,
    ):
        current = DatasetSession.from_store(dataset)
        if not current.loaded or not start_date or not end_date:
            return [], [], empty_trend_figure("Trend"), "", empty_trend_figure("Abwesenheiten nach Wochentag"), []
        try:
            view = build_dashboard_view(
                current,
                start_date,
                end_date,
                selected_weeks,
                search,
                selected_classes,
                flags,
                min_lates,
                min_absences,
                columns,
            )
        except DateRangeError:
            return [], [], empty_trend_figure("Trend"), "", empty_trend_figure("Abwesenheiten nach Wochentag"), []

        analysis_fig, regression = build_analysis_figure(view["weeks"], view["summary"], analysis_kind or "fehlzeiten")
        return (
            render_overview(view["overview"]),
            render_critical_patterns(view["critical_patterns"]),
            analysis_fig,
            trend_description_text(regression),
            build_weekday_figure(view["weekday_pattern"]),
            student_ranking(view["filtered"], ranking_sort or "fehlzeiten_unentsch"),
        )

    @app.callback(
        Output("table-download", "data"),
        Output("dashboard-html-download", "data"),
        Output("export-status", "children"),
        Input("export-xlsx-btn", "n_clicks"),
        Input("export-csv-btn", "n_clicks"),
        Input("export-html-btn", "n_clicks"),
        State("dataset-store", "data"),
        State("date-range", "start_date"),
        State("date-range", "end_date"),
        State("weeks-select", "value"),
        State("search-input", "value"),
        State("class-filter", "value"),
        State("flag-filter", "value"),
        State("min-lates-input", "value"),
        State("min-absences-input", "value"),
        State("expanded-store", "data"),
        State("average-toggle", "value"),
        prevent_initial_call=True,
    )
    def export_filtered_data(
        xlsx_clicks: int | None,
        csv_clicks: int | None,
        html_clicks: int | None,
        dataset: dict[str, Any] | None,
        start_date: str | None,
        end_date: str | None,
        selected_weeks: int | None,
        search: str | None,
        selected_classes: list[str] | None,
        flags: list[str] | None,
        min_lates: int | None,
        min_absences: int | None,
        expanded: dict[str, str] | None,
        average_toggle: list[str] | None,
    ):
        _ = xlsx_clicks, csv_clicks, html_clicks
        current = DatasetSession.from_store(dataset)
        if not current.loaded:
            return no_update, no_update, "Keine Daten zum Exportieren."
        try:
            view = build_dashboard_view(
                current,
                start_date,
                end_date,
                selected_weeks,
                search,
                selected_classes,
                flags,
                min_lates,
                min_absences,
                columns,
            )
        except DateRangeError as exc:
            return no_update, no_update, str(exc)

        export_rows = build_export_rows(
            view["filtered"],
            view["school_year"],
            view["weekly"],
            view["week_count"],
            processed=view["processed"],
            expanded=expanded,
            weeks=view["weeks"],
        )
        if not export_rows:
            return no_update, no_update, "Keine Zeilen zum Exportieren."
        table_df = pd.DataFrame(export_rows)
        table_df = table_df[[c for c in EXPORT_COLUMNS if c in table_df.columns] + [c for c in table_df.columns if c not in EXPORT_COLUMNS]]

        if ctx.triggered_id == "export-csv-btn":
            filename = export_filename(start_date, end_date, "csv")
            return (
                dcc.send_data_frame(table_df.to_csv, filename, index=False, quoting=csv.QUOTE_ALL),
                no_update,
                f"{len(table_df)} Zeilen exportiert: {filename}",
            )
        if ctx.triggered_id == "export-xlsx-btn":
            filename = export_filename(start_date, end_date, "xlsx")
            return (
                dcc.send_data_frame(table_df.to_excel, filename, index=False, sheet_name=EXPORT_SHEET_NAME),
                no_update,
                f"{len(table_df)} Zeilen exportiert: {filename}",
            )
        if ctx.triggered_id == "export-html-btn":
            summary: SummaryTotals = view["summary"]
            show_averages = "show" in (average_toggle or []) and view["availability"].is_available
            figure = build_trend_figure(view["weeks"], summary, view["class_averages"], show_averages)
            analysis_figure, _ = build_analysis_figure(view["weeks"], summary)
            stat_items = [
                ("Schüler", str(summary.student_count)),
                ("Verspätungen E / U / O", f"{summary.verspaetungen_entsch} / {summary.verspaetungen_unentsch} / {summary.verspaetungen_offen}"),
                ("Fehlzeiten E / U / O", f"{summary.fehlzeiten_entsch} / {summary.fehlzeiten_unentsch} / {summary.fehlzeiten_offen}"),
                ("SJ Verspätungen U", str(summary.sj_verspaetungen)),
                ("SJ Fehlzeiten U / Ges.", f"{summary.sj_fehlzeiten} / {summary.sj_fehlzeiten_ges}"),
                (f"Verspätungen ({view['week_count']} Wochen)", summary.verspaetungen_display),
                (f"Fehlzeiten ({view['week_count']} Wochen)", summary.fehlzeiten_display),
            ]
            range_label = f"{view['start'].strftime('%d.%m.%Y')} - {view['end'].strftime('%d.%m.%Y')}"
            html_doc = build_export_html(
                current.source_name,
                range_label,
                stat_items + overview_items(view["overview"]),
                figure,
                export_rows,
                critical_patterns=view["critical_patterns"],
                analysis_figure=analysis_figure,
            )
            filename = export_filename(start_date, end_date, "html")
            return (
                no_update,
                {"content": html_doc, "filename": filename, "type": "text/html"},
                f"Dashboard exportiert: {filename}",
            )
        return no_update, no_update, no_update

    return app


def main() -> None:
    parser = argparse.ArgumentParser(description="Dashboard für Verspätungen und Fehlzeiten")
    parser.add_argument("--file", type=str, default=None, help="Attendance export to preload (.csv, .xlsx, .xls)")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host for Dash app")
    parser.add_argument("--port", type=int, default=8050, help="Port for Dash app")
    parser.add_argument("--weeks", type=int, choices=WEEK_OPTIONS, default=DEFAULT_WEEKS, help="Weeks in the trend window")
    parser.add_argument("--columns", type=str, default=None, help="JSON file overriding export column names")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (default: INFO)")
    parser.add_argument("--check-only", action="store_true", help="Only parse --file and print a summary")
    args = parser.parse_args()

    setup_logging(args.log_level)
    columns = ColumnConfig.load_from_file(args.columns)

    session = DatasetSession()
    if args.file:
        try:
            session = load_dataset_file(resolve_data_path(args.file), columns)
        except IngestionError as exc:
            raise SystemExit(str(exc)) from exc

    if args.check_only:
        if not session.loaded:
            parser.error("--check-only requires --file")
        start, end = default_date_range()
        view = build_dashboard_view(session, start, end, args.weeks, columns=columns)
        summary: SummaryTotals = view["summary"]
        availability = view["availability"]
        print(f"File: {session.source_name}")
        print(f"Rows: {len(session.rows)}")
        print(f"Students: {len(view['processed'].student_stats)}")
        print(f"Classes: {availability.class_count} (class averages {'on' if availability.is_available else 'off'})")
        print(f"Range: {start.isoformat()} - {end.isoformat()}")
        print(f"Verspaetungen E/U/O: {summary.verspaetungen_entsch}/{summary.verspaetungen_unentsch}/{summary.verspaetungen_offen}")
        print(f"Fehlzeiten E/U/O: {summary.fehlzeiten_entsch}/{summary.fehlzeiten_unentsch}/{summary.fehlzeiten_offen}")
        print(f"Last {args.weeks} weeks: V {summary.verspaetungen_display}, F {summary.fehlzeiten_display}")
        return

    logger.info("Starting %s on %s:%d", APP_TITLE, args.host, args.port)
    app = build_app(session, columns, args.weeks)
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
