"""pandas helpers for charting valuation history."""

from __future__ import annotations

from typing import Iterable

import pandas as pd

from .models import HistoricalDataPoint

COLUMNS = ["Total Value", "Total Cost", "Total PnL", "ROI"]


def history_to_frame(points: Iterable[HistoricalDataPoint]) -> pd.DataFrame:
    """Return history as a ``Date``-indexed frame, oldest first."""

    rows = [
        {
            "Date": point.timestamp,
            "Total Value": point.total_value,
            "Total Cost": point.total_cost,
            "Total PnL": point.total_pnl,
            "ROI": point.roi,
        }
        for point in points
    ]
    if not rows:
        return pd.DataFrame(columns=COLUMNS, index=pd.DatetimeIndex([], name="Date"))
    df = pd.DataFrame(rows).set_index("Date").sort_index()
    df.index = pd.to_datetime(df.index)
    return df


__all__ = ["history_to_frame"]
