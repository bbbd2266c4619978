from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass(frozen=True)
class Rollover:
    month: date
    available_start_cents: int
    available_end_cents: int
    start_overridden: bool


def derive_available_start(
    override_cents: Optional[int], previous_end_cents: Optional[int]
) -> int:
    if override_cents is not None:
        return override_cents
    if previous_end_cents is not None:
        return previous_end_cents
    return 0


def compute_rollover(
    month: date,
    *,
    planned_income_cents: int,
    planned_outflow_cents: int,
    override_cents: Optional[int] = None,
    previous_end_cents: Optional[int] = None,
) -> Rollover:
    """Carry the previous month's ending balance into ``month``.

    ``previous_end_cents`` is ``None`` when there is no row for the previous
    month; an explicit override always wins over the carried value.
    """
    start = derive_available_start(override_cents, previous_end_cents)
    return Rollover(
        month=month,
        available_start_cents=start,
        available_end_cents=start + planned_income_cents - planned_outflow_cents,
        start_overridden=override_cents is not None,
    )
