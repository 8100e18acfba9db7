# ndc_calculator/calculator/dosage_form.py
from __future__ import annotations

import logging
from typing import Iterable, Optional

from ndc_calculator.calculator.units import INSULIN_KEYWORDS
from ndc_calculator.data_models import PackageRecord

logger = logging.getLogger(__name__)

INHALER = "inhaler"
INSULIN = "insulin"
LIQUID = "liquid"
SOLID = "solid"

INHALER_KEYWORDS = (
    "hfa",
    "inhaler",
    "aerosol",
    "inhalation",
    "mdi",
    "diskus",
    "ellipta",
    "turbuhaler",
    "handihaler",
)

INHALER_DOSAGE_FORMS = {
    "AEROSOL",
    "AEROSOL, METERED",
    "AEROSOL, POWDER",
    "SPRAY, METERED",
    "INHALANT",
    "POWDER, METERED",
}

LIQUID_DOSAGE_FORMS = {
    "SOLUTION",
    "SUSPENSION",
    "SYRUP",
    "ELIXIR",
    "LIQUID",
    "SOLUTION/DROPS",
    "SUSPENSION/DROPS",
    "FOR SUSPENSION",
    "POWDER, FOR SUSPENSION",
}


def detect_dosage_form(
    drug_name: Optional[str],
    packages: Iterable[PackageRecord],
    dose_unit: Optional[str],
) -> str:
    """
    Форма выпуска: inhaler | insulin | liquid | solid.

    Порядок признаков: единица дозы, ключевые слова в названии,
    лекарственные формы упаковок, по умолчанию solid.
    """
    name = (drug_name or "").lower().strip()
    unit = (dose_unit or "").lower().strip()

    if unit == "actuation":
        return INHALER
    if unit == "unit" and any(keyword in name for keyword in INSULIN_KEYWORDS):
        return INSULIN
    if unit == "ml":
        return LIQUID

    if any(keyword in name for keyword in INHALER_KEYWORDS):
        return INHALER
    if any(keyword in name for keyword in INSULIN_KEYWORDS):
        return INSULIN

    forms = {(pkg.dosage_form or "").upper().strip() for pkg in packages if pkg.dosage_form}
    if forms & INHALER_DOSAGE_FORMS:
        logger.info("Detected inhaler from package dosage forms: %s", sorted(forms))
        return INHALER
    if forms & LIQUID_DOSAGE_FORMS:
        logger.info("Detected liquid from package dosage forms: %s", sorted(forms))
        return LIQUID

    return SOLID
