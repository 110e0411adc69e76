def deletion_threshold(total_count: int, threshold_percent: float) -> float:
    """Number of deletions tolerated before an alert (0 for an empty subscription)."""
    if total_count <= 0:
        return 0.0
    return round(total_count * threshold_percent / 100, 2)


def evaluate(deleted_count: int, total_count: int, threshold_percent: float) -> bool:
    """
    True when ``deleted_count`` exceeds ``threshold_percent`` of ``total_count``.

    evaluate(30, 100, 25) -> True, evaluate(20, 100, 25) -> False.
    With no resources left any deletion triggers.
    """
    return deleted_count > deletion_threshold(total_count, threshold_percent)
