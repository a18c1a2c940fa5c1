from __future__ import annotations

from typing import Any

import pandas as pd


def cell_text(x: Any) -> str:
    """
    Trimmed display text of a sheet cell.

    Cells are str, int/float or empty. Missing values (None, NaN) become "",
    and integral floats lose their ".0" so 5.0 and "5" compare equal.
    """
    if x is None:
        return ""
    if isinstance(x, bool):
        # Sheets renders checkbox cells as TRUE/FALSE
        return "TRUE" if x else "FALSE"
    if isinstance(x, float):
        if pd.isna(x):
            return ""
        if x.is_integer():
            return str(int(x))
        return str(x)
    return str(x).replace("\u00A0", " ").strip()


def column_texts(frame: pd.DataFrame, column: str) -> pd.Series:
    """cell_text over one column; an empty Series when the column is absent."""
    if column not in frame.columns:
        return pd.Series([], dtype=object)
    return frame[column].map(cell_text)
