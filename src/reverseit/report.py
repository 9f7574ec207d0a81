"""Generación de Excel formateado con el registro de glucosa."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pandas as pd
from openpyxl.styles import Alignment, Border, Font, Side

_WEEKDAYS: tuple[str, ...] = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

_HEADER_MAP: dict[str, str] = {
    "weekday": "Day",
    "datetime": "Date / Time",
    "glucose_mg_dl": "Glucose (mg/dL)",
    "context": "Context",
    "status": "Status",
    "note": "Note",
}

_COLUMN_WIDTHS: tuple[tuple[str, int], ...] = (
    ("Day", 6),
    ("Date / Time", 18),
    ("Glucose (mg/dL)", 14),
    ("Context", 14),
    ("Status", 10),
    ("Note", 30),
)


@dataclass(frozen=True)
class ReportLayout:
    """Layout/formatting configuration for the glucose log sheet."""

    sheet_name: str = "Glucose log"


def _weekday_label(i: object) -> str:
    """Convierte índice 0-6 (lunes-domingo) a etiqueta de 3 letras."""
    if i is None or (isinstance(i, float) and pd.isna(i)):
        return ""
    if isinstance(i, int | float):
        idx = int(i)
        return _WEEKDAYS[idx] if 0 <= idx < 7 else ""
    return ""


def _naive(value: object) -> object:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return value


def _weekday(value: object) -> int | None:
    if isinstance(value, datetime):
        return value.weekday()
    return None


def _prepare(frame: pd.DataFrame) -> pd.DataFrame:
    """Añade día de semana, quita columnas auxiliares y el timezone."""
    export_df = frame.drop(
        columns=[c for c in ("date", "time") if c in frame.columns]
    ).copy()
    if "datetime" in export_df.columns:
        weekdays = export_df["datetime"].map(_weekday)
        export_df["datetime"] = export_df["datetime"].map(_naive)
    else:
        weekdays = pd.Series([None] * len(export_df), index=export_df.index)
    export_df.insert(0, "weekday", weekdays.map(_weekday_label))
    return export_df.rename(columns=_HEADER_MAP)


def write_glucose_xlsx(
    frame: pd.DataFrame, out_path: Path, layout: ReportLayout
) -> None:
    """Write a formatted Excel file suitable for printing.

    Args:
        frame: Glucose log from ``summary.glucose_frame``.
        out_path: Output path for the XLSX file.
        layout: Excel layout parameters.
    """
    out_path.parent.mkdir(parents=True, exist_ok=True)
    export_df = _prepare(frame)

    with pd.ExcelWriter(out_path, engine="openpyxl") as writer:
        export_df.to_excel(writer, index=False, sheet_name=layout.sheet_name)
        ws = writer.book[layout.sheet_name]
        _format_sheet(ws)


def _format_sheet(ws: Any) -> None:
    """Apply borders, widths and number formats to a worksheet."""
    thin = Side(style="thin")
    border = Border(left=thin, right=thin, top=thin, bottom=thin)
    center = Alignment(horizontal="center", vertical="center", wrap_text=True)
    for cell in ws[1]:
        cell.font = Font(bold=True)
        cell.alignment = center
        cell.border = border
    for row in ws.iter_rows(min_row=2):
        for cell in row:
            cell.alignment = center
            cell.border = border

    col_index = {str(cell.value): idx + 1 for idx, cell in enumerate(ws[1])}
    for header, width in _COLUMN_WIDTHS:
        idx = col_index.get(header)
        if idx is not None:
            letter = ws.cell(row=1, column=idx).column_letter
            ws.column_dimensions[letter].width = width

    fmt_map = {"Date / Time": "dd/mm/yyyy hh:mm", "Glucose (mg/dL)": "0"}
    for row in ws.iter_rows(min_row=2):
        for header, fmt in fmt_map.items():
            idx = col_index.get(header)
            if idx is not None:
                row[idx - 1].number_format = fmt
