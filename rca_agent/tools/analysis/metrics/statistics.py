"""Statistical analysis for time series data."""

import statistics

# Shift reported when the baseline is perfectly flat but the window moved.
ZERO_VARIANCE_SHIFT = 100.0


def calculate_series_stats(points: list[float]) -> dict[str, float]:
    """
    Calculates statistical metrics for a list of data points.

    Args:
        points: List of numerical values.

    Returns:
        Dictionary containing statistical metrics.
    """
    if not points:
        return {}

    points_sorted = sorted(points)
    count = len(points_sorted)

    stats = {
        "count": float(count),
        "min": points_sorted[0],
        "max": points_sorted[-1],
        "mean": statistics.mean(points_sorted),
        "median": statistics.median(points_sorted),
    }

    if count > 1:
        stats["stdev"] = statistics.stdev(points_sorted)
        stats["p95"] = points_sorted[int(count * 0.95)]
    else:
        stats["stdev"] = 0.0
        stats["p95"] = points_sorted[0]

    return stats


def window_zscore(baseline: list[float], window: list[float]) -> float | None:
    """
    Z-score of the window mean against the baseline distribution.

    Args:
        baseline: Trailing baseline values.
        window: Values inside the incident window.

    Returns:
        The z-score, or None when either side is empty. A flat baseline
        yields +/-ZERO_VARIANCE_SHIFT if the window mean differs, else 0.
    """
    if not baseline or not window:
        return None

    base = calculate_series_stats(baseline)
    shift = statistics.mean(window) - base["mean"]
    if base["stdev"] > 0:
        return shift / base["stdev"]
    if shift == 0:
        return 0.0
    return ZERO_VARIANCE_SHIFT if shift > 0 else -ZERO_VARIANCE_SHIFT
