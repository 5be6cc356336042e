"""
Commission arithmetic and tiered schedule (slab) handling.

All money math is Decimal. Commission amounts are quantized to 6 places,
matching partners.total_revenue numeric(20,6), so repeated credits never
drift: sum(quantize(a_i * r / 100)) equals the stored total exactly.

Slab schedule shape (stored as partners.commission_slabs jsonb):

    {"slabs": [{"from": 0, "to": 999, "commission": 5},
               {"from": 1000, "to": null, "commission": 8}]}

"from"/"to" are cumulative-revenue brackets, "commission" is a percent.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, List, Optional, Union

COMMISSION_QUANT = Decimal("0.000001")
# commission_entries.commission_percent is numeric(5, 2)
PERCENT_QUANT = Decimal("0.01")


@dataclass(frozen=True)
class CommissionSlab:
    lower: int
    upper: Optional[int]
    percent: Decimal

    def to_dict(self) -> Dict[str, Any]:
        percent = self.percent
        # keep integral percents as ints in jsonb
        commission = int(percent) if percent == percent.to_integral_value() else float(percent)
        return {"from": self.lower, "to": self.upper, "commission": commission}


def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    """
    Convert a monetary value to Decimal without binary float noise.

    Raises:
        ValueError: value is not a finite number
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError("Boolean is not a monetary value")
    else:
        try:
            # str() first: Decimal(0.1) would keep the float's binary error
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValueError(f"Invalid monetary value: {value!r}") from None
    if not result.is_finite():
        raise ValueError(f"Invalid monetary value: {value!r}")
    return result


def compute_commission(amount: Union[Decimal, int, float, str], percent: Union[Decimal, int, float, str]) -> Decimal:
    """
    commission = amount * percent / 100, quantized to 6 decimal places.

    Raises:
        ValueError: negative amount or percent
    """
    amount_dec = to_decimal(amount)
    percent_dec = to_decimal(percent)
    if amount_dec < 0:
        raise ValueError(f"Amount must be non-negative, got {amount_dec}")
    if percent_dec < 0:
        raise ValueError(f"Commission percent must be non-negative, got {percent_dec}")
    return (amount_dec * percent_dec / Decimal(100)).quantize(COMMISSION_QUANT, rounding=ROUND_HALF_UP)


def _slab_list(schedule: Union[Dict[str, Any], List[Dict[str, Any]], None]) -> List[Dict[str, Any]]:
    if schedule is None:
        return []
    if isinstance(schedule, dict):
        slabs = schedule.get("slabs")
        if not isinstance(slabs, list):
            raise ValueError("commission_slabs must contain a 'slabs' list")
        return slabs
    if isinstance(schedule, list):
        return schedule
    raise ValueError("commission_slabs must be an object with a 'slabs' list")


def parse_commission_slabs(schedule: Union[Dict[str, Any], List[Dict[str, Any]], None]) -> List[CommissionSlab]:
    """
    Validate a slab schedule and return it as CommissionSlab objects.

    Rules:
        - at least one slab
        - each "from" is an integer >= 0; "to" is null or an integer > "from"
        - "commission" between 0 and 100
        - "commission" has at most 2 decimal places
        - first slab starts at 0
        - contiguous: next.from == prev.to + 1 (no gaps, no overlap)
        - last slab is open-ended ("to": null)

    Raises:
        ValueError: with the first rule that failed
    """
    raw = _slab_list(schedule)
    if not raw:
        raise ValueError("At least one commission slab is required")

    slabs: List[CommissionSlab] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"Slab {index} must be an object")
        lower = item.get("from")
        upper = item.get("to")
        if isinstance(lower, bool) or not isinstance(lower, int) or lower < 0:
            raise ValueError(f"Slab {index}: from must be an integer >= 0")
        if upper is not None:
            if isinstance(upper, bool) or not isinstance(upper, int) or upper < 0:
                raise ValueError(f"Slab {index}: to must be null or an integer >= 0")
            if upper <= lower:
                raise ValueError(f"Slab {index}: to must be greater than from when not null")
        try:
            percent = to_decimal(item.get("commission"))
        except ValueError:
            raise ValueError(f"Slab {index}: commission must be a number") from None
        if percent < 0 or percent > 100:
            raise ValueError(f"Slab {index}: commission must be between 0 and 100")
        if percent != percent.quantize(PERCENT_QUANT):
            raise ValueError(f"Slab {index}: commission must have at most 2 decimal places")
        slabs.append(CommissionSlab(lower=lower, upper=upper, percent=percent))

    if slabs[0].lower != 0:
        raise ValueError("First slab must start at from: 0")
    for current, following in zip(slabs, slabs[1:]):
        if current.upper is None or current.upper + 1 != following.lower:
            raise ValueError("Slabs must be contiguous (no gaps or overlaps)")
    if slabs[-1].upper is not None:
        raise ValueError("Last slab must have to: null")
    return slabs


def validate_commission_slabs(schedule: Union[Dict[str, Any], List[Dict[str, Any]], None]) -> Dict[str, Any]:
    """Validate and return the canonical jsonb document for storage."""
    return {"slabs": [slab.to_dict() for slab in parse_commission_slabs(schedule)]}


def resolve_slab_percent(slabs: List[CommissionSlab], total_revenue: Union[Decimal, int, str]) -> Decimal:
    """
    Percent of the slab covering the partner's cumulative revenue.

    Brackets are integers; a fractional revenue between two brackets
    (e.g. 999.5 with to=999 / from=1000) stays in the lower slab.
    """
    revenue = to_decimal(total_revenue)
    chosen = slabs[0]
    for slab in slabs:
        if revenue >= slab.lower:
            chosen = slab
    return chosen.percent


def resolve_commission_percent(
    flat_percent: Union[int, Decimal],
    commission_slabs: Optional[Union[Dict[str, Any], List[Dict[str, Any]]]],
    total_revenue: Union[Decimal, int, str],
    tiered_enabled: bool,
) -> Decimal:
    """
    Rate used by the Commission Accumulator.

    Flat commission_percent unless tiered resolution is switched on and the
    partner has a slab schedule. A stored schedule that fails validation
    raises ValueError instead of silently falling back.
    """
    if tiered_enabled and commission_slabs:
        return resolve_slab_percent(parse_commission_slabs(commission_slabs), total_revenue)
    return to_decimal(flat_percent)
