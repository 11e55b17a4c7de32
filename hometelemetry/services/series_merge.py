# hometelemetry/services/series_merge.py

from typing import List, Optional, Sequence

from hometelemetry.models.series import MergedPoint, SeriesPoint


def merge_series(
    consumption: Sequence[SeriesPoint],
    cost: Optional[Sequence[SeriesPoint]] = None,
) -> List[MergedPoint]:
    """
    Left outer join of consumption and cost on the exact timestamp string.

    Every consumption point survives; cost is None where no cost point shares
    its timestamp, and everywhere when no cost series is configured.
    """
    cost_by_ts = {p.timestamp: p.value for p in (cost or [])}
    return [
        MergedPoint(
            timestamp=p.timestamp,
            value=p.value,
            cost=cost_by_ts.get(p.timestamp),
            is_estimated=p.is_estimated,
        )
        for p in consumption
    ]
