from __future__ import annotations

from typing import List


def escalating_delays(
    initial: float, step: float, ceiling: float, count: int
) -> List[float]:
    """Delays growing by ``step`` from ``initial`` and capped at ``ceiling``.

    ``escalating_delays(2, 2, 8, 9)`` gives ``[2, 4, 6, 8, 8, 8, 8, 8, 8]``.
    """
    return [min(initial + step * i, ceiling) for i in range(count)]
