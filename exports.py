from __future__ import annotations

import html as std_html
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Sequence

import pandas as pd
import plotly.graph_objects as go
import plotly.io as pio
from plotly.offline import get_plotlyjs_version

from analytics import CriticalPattern
from processing import (
    AbsenceEntry,
    ProcessedData,
    SchoolYearStats,
    StudentStats,
    Week,
    WeeklyStats,
    excuse_deadline_passed,
    parse_week_count,
    split_student_key,
    student_details,
)
from summary import format_weekly_display

WEEKDAYS_DE = ["Montag", "Dienstag", "Mittwoch", "Donnerstag", "Freitag", "Samstag", "Sonntag"]
EXPORT_SHEET_NAME = "Anwesenheitsstatistik"
EXPORT_COLUMNS = [
    "Nachname",
    "Vorname",
    "Klasse",
    "Verspätungen (E)",
    "Verspätungen (U)",
    "Verspätungen (O)",
    "Fehlzeiten (E)",
    "Fehlzeiten (U)",
    "Fehlzeiten (O)",
    "SJ-Verspätungen",
    "SJ-Fehlzeiten",
    "SJ-Fehlzeiten (Ges.)",
    "Letzte Wochen (V)",
    "Letzte Wochen (F)",
]
DETAILS_COLUMN = "Details"
EXCUSED_COLOR = "#2f7d32"
UNEXCUSED_COLOR = "#c62828"
PENDING_COLOR = "#b58900"
REPORT_CSS = (
    "body{font-family:Arial,sans-serif;margin:16px;color:#222}"
    ".meta{color:#666;font-size:13px}"
    "dl.summen{display:grid;grid-template-columns:max-content auto;gap:2px 12px}"
    "dd{margin:0;font-weight:600}"
    "table.schueler{border-collapse:collapse;font-size:12px}"
    "table.schueler td,table.schueler th{border:1px solid #ddd;padding:3px 6px;vertical-align:top}"
    ".leer{color:#888;font-style:italic}"
)


def detail_title(filter_type: str | None, selected_weeks: int | str = 4) -> str:
    weeks = parse_week_count(selected_weeks)
    titles = {
        "details": "Unentschuldigte Verspätungen und Fehlzeiten",
        "verspaetungen_entsch": "Entschuldigte Verspätungen",
        "verspaetungen_unentsch": "Unentschuldigte Verspätungen",
        "verspaetungen_offen": "Noch zu entschuldigende Verspätungen (Frist läuft noch)",
        "fehlzeiten_entsch": "Entschuldigte Fehlzeiten",
        "fehlzeiten_unentsch": "Unentschuldigte Fehlzeiten",
        "fehlzeiten_offen": "Noch zu entschuldigende Fehlzeiten (Frist läuft noch)",
        "sj_verspaetungen": "Verspätungen im Schuljahr",
        "sj_fehlzeiten": "Unentschuldigte Fehlzeiten im Schuljahr",
        "sj_fehlzeiten_ges": "Gesamte Fehlzeiten im Schuljahr (E + U)",
        "sum_verspaetungen": f"Unentschuldigte Verspätungen (letzte {weeks} Wochen)",
        "sum_fehlzeiten": f"Unentschuldigte Fehlzeiten (letzte {weeks} Wochen)",
    }
    return titles.get(filter_type or "", "Abwesenheitsdetails")


def format_german_date(day: date) -> str:
    return f"{WEEKDAYS_DE[day.weekday()]}, {day.strftime('%d.%m.%Y')}"


def format_entry_line(entry: AbsenceEntry, number: int | None = None) -> str:
    prefix = f"{number}. " if number is not None else ""
    line = f"{prefix}{format_german_date(entry.datum)}: "
    if entry.is_tardy:
        line += f"{entry.beginn_zeit or '?'} - {entry.end_zeit or '?'} Uhr"
        if entry.grund:
            line += f" ({entry.grund})"
    else:
        line += entry.art
        if entry.grund:
            line += f" - {entry.grund}"
    if entry.status:
        line += f" [{entry.status}]"
    return line


def entry_status_color(entry: AbsenceEntry, now: datetime | None = None) -> str:
    status = entry.status.strip()
    if status in {"entsch.", "Attest", "Attest Amtsarzt"}:
        return EXCUSED_COLOR
    if status in {"nicht entsch.", "nicht akzep."}:
        return UNEXCUSED_COLOR
    if not status and excuse_deadline_passed(entry.datum, now or datetime.now()):
        return UNEXCUSED_COLOR
    return PENDING_COLOR


def numbered_entry_lines(entries: list[AbsenceEntry]) -> list[str]:
    # newest first, numbered so the oldest entry is 1
    total = len(entries)
    return [format_entry_line(entry, total - index) for index, entry in enumerate(entries)]


def build_export_rows(
    students: Iterable[tuple[str, StudentStats]],
    school_year_stats: Mapping[str, SchoolYearStats],
    weekly_stats: Mapping[str, WeeklyStats],
    selected_weeks: int | str,
    processed: ProcessedData | None = None,
    expanded: Mapping[str, str] | None = None,
    weeks: list[Week] | None = None,
) -> list[dict[str, Any]]:
    week_count = parse_week_count(selected_weeks)
    expanded = expanded or {}
    rows: list[dict[str, Any]] = []
    for student, stats in students:
        year = school_year_stats.get(student) or SchoolYearStats()
        weekly = weekly_stats.get(student) or WeeklyStats.zero(week_count)
        surname, first_name = split_student_key(student)
        row: dict[str, Any] = {
            "Nachname": surname,
            "Vorname": first_name,
            "Klasse": stats.klasse,
            "Verspätungen (E)": stats.verspaetungen_entsch,
            "Verspätungen (U)": stats.verspaetungen_unentsch,
            "Verspätungen (O)": stats.verspaetungen_offen,
            "Fehlzeiten (E)": stats.fehlzeiten_entsch,
            "Fehlzeiten (U)": stats.fehlzeiten_unentsch,
            "Fehlzeiten (O)": stats.fehlzeiten_offen,
            "SJ-Verspätungen": year.verspaetungen_unentsch,
            "SJ-Fehlzeiten": year.fehlzeiten_unentsch,
            "SJ-Fehlzeiten (Ges.)": year.fehlzeiten_gesamt,
            "Letzte Wochen (V)": format_weekly_display(weekly.verspaetungen.total, weekly.verspaetungen.weekly),
            "Letzte Wochen (F)": format_weekly_display(weekly.fehlzeiten.total, weekly.fehlzeiten.weekly),
        }
        filter_type = expanded.get(student)
        if processed is not None and filter_type:
            entries = student_details(processed, student, filter_type, weeks)
            if entries:
                lines = [detail_title(filter_type, week_count)] + [format_entry_line(entry) for entry in entries]
                row[DETAILS_COLUMN] = "\n".join(lines)
        rows.append(row)
    return rows


def export_filename(start: str | date | None, end: str | date | None, extension: str) -> str:
    return f"{EXPORT_SHEET_NAME}_{start or ''}_{end or ''}.{extension.lstrip('.')}"


def figure_to_html_fragment(figure: go.Figure | None) -> str:
    if figure is None or not figure.data:
        return "<p class='leer'>Keine Daten</p>"
    return pio.to_html(figure, include_plotlyjs=False, full_html=False)


def students_to_html_table(export_rows: list[dict[str, Any]]) -> str:
    if not export_rows:
        return "<p class='leer'>Keine Schüler in der aktuellen Filterung</p>"
    df = pd.DataFrame(export_rows).fillna("")
    for column in df.columns:
        df[column] = df[column].map(lambda value: std_html.escape(str(value)).replace("\n", "<br>"))
    df.columns = [std_html.escape(str(column)) for column in df.columns]
    with pd.option_context("display.max_colwidth", None):
        return df.to_html(index=False, escape=False, border=0, classes="schueler")


def critical_patterns_to_html(patterns: Sequence[CriticalPattern]) -> str:
    if not patterns:
        return "<p class='leer'>Keine auffälligen Muster</p>"
    items = []
    for pattern in patterns:
        label = std_html.escape(pattern.student)
        if pattern.klasse:
            label += f" ({std_html.escape(pattern.klasse)})"
        reasons = "".join(f"<li>{std_html.escape(reason)}</li>" for reason in pattern.reasons)
        items.append(f"<li><strong>{label}</strong><ul>{reasons}</ul></li>")
    return f"<ul class='muster'>{''.join(items)}</ul>"


def build_export_html(
    source_label: str | None,
    range_label: str,
    stat_items: list[tuple[str, str]],
    trend_figure: go.Figure | None,
    export_rows: list[dict[str, Any]],
    critical_patterns: Sequence[CriticalPattern] = (),
    analysis_figure: go.Figure | None = None,
    now: datetime | None = None,
) -> str:
    """Standalone report of the current view; plotly.js is loaded from the CDN."""
    exported = (now or datetime.now()).strftime("%d.%m.%Y %H:%M")
    summary = "".join(
        f"<dt>{std_html.escape(label)}</dt><dd>{std_html.escape(value)}</dd>" for label, value in stat_items
    )
    meta = [f"Zeitraum: {std_html.escape(range_label)}", f"Exportiert am {exported}"]
    if source_label:
        meta.insert(0, std_html.escape(source_label))
    sections = [
        f"<h2>Summen</h2><dl class='summen'>{summary}</dl>",
        f"<h2>Auffällige Schüler</h2>{critical_patterns_to_html(critical_patterns)}",
        f"<h2>Wochenverlauf</h2>{figure_to_html_fragment(trend_figure)}",
    ]
    if analysis_figure is not None:
        sections.append(f"<h2>Trend</h2>{figure_to_html_fragment(analysis_figure)}")
    sections.append(f"<h2>Schüler (aktuelle Filterung)</h2>{students_to_html_table(export_rows)}")

    return (
        "<!doctype html>\n<html lang='de'><head><meta charset='utf-8'>"
        f"<title>{EXPORT_SHEET_NAME}</title>"
        f"<script src='https://cdn.plot.ly/plotly-{get_plotlyjs_version()}.min.js'></script>"
        f"<style>{REPORT_CSS}</style></head><body>"
        f"<h1>{EXPORT_SHEET_NAME}</h1><p class='meta'>{' · '.join(meta)}</p>"
        f"{''.join(sections)}</body></html>"
    )
