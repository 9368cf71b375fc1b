"""Attribution payout calculation.

Turns attribution records into absolute reward amounts. Percentages earned
by the same agent across stages and pipelines accumulate before the split.
"""

from collections.abc import Mapping
from typing import Any, Dict, Iterable


def _field(record: Any, *names: str) -> Any:
    for name in names:
        if isinstance(record, Mapping):
            if name in record:
                return record[name]
        elif hasattr(record, name):
            return getattr(record, name)
    raise KeyError(f"Attribution record is missing {names[0]!r}")


def calculate_payouts(
    attributions: Iterable[Any], total_amount: float
) -> Dict[str, float]:
    """Split ``total_amount`` between agents by attribution percentage.

    Args:
        attributions: Attribution models, or mappings with ``agent_id``
            (or ``agentId``) and ``percentage``.
        total_amount: Amount to distribute.

    Returns:
        Mapping of agent id to payout, in first-seen order. Empty input
        yields an empty mapping.

    Example:
        >>> calculate_payouts(
        ...     [{"agent_id": "a", "percentage": 60}, {"agent_id": "b", "percentage": 40}],
        ...     1000,
        ... )
        {'a': 600.0, 'b': 400.0}
    """
    percentages: Dict[str, float] = {}
    for record in attributions:
        agent_id = _field(record, "agent_id", "agentId")
        percentage = _field(record, "percentage")
        percentages[agent_id] = percentages.get(agent_id, 0) + percentage

    return {
        agent_id: (percentage / 100) * total_amount
        for agent_id, percentage in percentages.items()
    }
