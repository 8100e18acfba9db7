# ndc_calculator/calculator/quantity.py
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ndc_calculator.calculator.units import SUPPORTED_UNITS, normalize_unit
from ndc_calculator.data_models import ParsedDirective, RequiredQuantity, RoundingTrace
from ndc_calculator.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_DAYS_SUPPLY = 365

ROUND_NEAREST_ML = "round_nearest_ml"
ROUND_WHOLE_UNIT = "round_whole_unit"

# Погрешность float: сначала режем хвост, потом округляем
_PRECISION = 6


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_rounding(total: float, unit: str) -> RoundingTrace:
    """
    Округление до целого, половина вверх: жидкости до mL, штучные единицы
    (tab, cap, actuation, unit) до целой единицы.
    """
    before = round(total, _PRECISION)
    rule = ROUND_NEAREST_ML if unit == "mL" else ROUND_WHOLE_UNIT
    return RoundingTrace(rule=rule, before=before, after=float(_round_half_up(before)))


def calculate_quantity(
    directive: ParsedDirective,
    days_supply: int,
    dosage_form: Optional[str] = None,
    unit_override: Optional[str] = None,
) -> RequiredQuantity:
    """
    total = per_day × days_supply, затем округление по правилу единицы.

    unit_override только переименовывает единицу, число не меняется.
    """
    if isinstance(days_supply, bool) or not isinstance(days_supply, int):
        raise ValidationError("Invalid days_supply: must be an integer")
    if days_supply <= 0 or days_supply > MAX_DAYS_SUPPLY:
        raise ValidationError(f"Invalid days_supply: must be between 1 and {MAX_DAYS_SUPPLY}")

    if not directive.parsed or not directive.dose_unit:
        raise ValidationError("Cannot calculate quantity from an unparsed directive")
    if directive.per_day is None or directive.per_day <= 0:
        raise ValidationError("Invalid per_day: must be greater than 0")

    unit = normalize_unit(directive.dose_unit) or directive.dose_unit
    if unit not in SUPPORTED_UNITS:
        raise ValidationError(f"Unsupported dose unit: {directive.dose_unit}")

    rounding = apply_rounding(directive.per_day * days_supply, unit)

    if unit_override:
        override = normalize_unit(unit_override)
        if override is None:
            raise ValidationError(
                f"Invalid quantity_unit_override: {unit_override}",
                field_errors=[{"field": "quantity_unit_override", "message": f"must be one of {', '.join(SUPPORTED_UNITS)}"}],
            )
        if override != unit:
            logger.info("Dose unit relabelled from %s to %s", unit, override)
        unit = override

    logger.info(
        "Quantity calculated: %s %s/day x %s days = %s (%s)",
        directive.per_day,
        unit,
        days_supply,
        rounding.after,
        rounding.rule,
    )
    return RequiredQuantity(
        dose_unit=unit,
        per_day=round(directive.per_day, _PRECISION),
        total_qty=rounding.after,
        days_supply=days_supply,
        rounding=rounding,
        dosage_form=dosage_form,
    )
