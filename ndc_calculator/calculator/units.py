# ndc_calculator/calculator/units.py
"""
Единицы отпуска и справочные значения по устройствам.

Канонические единицы: tab, cap, mL, actuation, unit.
"""
from __future__ import annotations

import re
from typing import Dict, Optional

SUPPORTED_UNITS = ("tab", "cap", "mL", "actuation", "unit")

# Все жидкие единицы приводим к mL
LIQUID_CONVERSIONS: Dict[str, float] = {
    "ml": 1,
    "mls": 1,
    "milliliter": 1,
    "milliliters": 1,
    "millilitre": 1,
    "millilitres": 1,
    "cc": 1,
    "teaspoon": 5,
    "teaspoons": 5,
    "tsp": 5,
    "tablespoon": 15,
    "tablespoons": 15,
    "tbsp": 15,
    "oz": 30,
    "ounce": 30,
    "ounces": 30,
}

UNIT_SYNONYMS: Dict[str, str] = {
    "tablet": "tab",
    "tablets": "tab",
    "tab": "tab",
    "tabs": "tab",
    "capsule": "cap",
    "capsules": "cap",
    "cap": "cap",
    "caps": "cap",
    "puff": "actuation",
    "puffs": "actuation",
    "actuation": "actuation",
    "actuations": "actuation",
    "inhalation": "actuation",
    "inhalations": "actuation",
    "spray": "actuation",
    "sprays": "actuation",
    "unit": "unit",
    "units": "unit",
    "iu": "unit",
    **{name: "mL" for name in LIQUID_CONVERSIONS},
}

# Сколько нажатий в одном баллончике (по названию препарата)
ACTUATION_COUNTS: Dict[str, int] = {
    # Короткие бета-агонисты
    "albuterol": 200,
    "proventil": 200,
    "ventolin": 200,
    "proair": 200,
    # Ингаляционные кортикостероиды
    "fluticasone": 120,
    "flovent": 120,
    "qvar": 120,
    "pulmicort": 120,
    "budesonide": 120,
    # Комбинации
    "advair": 120,
    "symbicort": 120,
    "breo": 60,
    "dulera": 120,
    # Антихолинергики
    "atrovent": 200,
    "ipratropium": 200,
    "spiriva": 30,
    "tiotropium": 30,
}
DEFAULT_INHALER_ACTUATIONS = 200

INSULIN_KEYWORDS = (
    "insulin",
    "humalog",
    "novolog",
    "lantus",
    "levemir",
    "tresiba",
    "basaglar",
    "toujeo",
    "apidra",
    "fiasp",
)

DEFAULT_INSULIN_CONCENTRATION = 100  # U-100
# Объём по умолчанию, если в описании упаковки его нет
DEFAULT_FILL_VOLUME_ML: Dict[str, float] = {
    "pen": 3.0,
    "cartridge": 3.0,
    "vial": 10.0,
    "syringe": 1.0,
}

_CONCENTRATION_PATTERNS = (
    re.compile(r"\bu[\s-]?(\d{2,3})\b", re.IGNORECASE),
    re.compile(r"\b(\d{2,3})\s*(?:units?|\[iu\]|iu)\s*/\s*(?:1\s*)?ml\b", re.IGNORECASE),
)


def normalize_unit(unit: Optional[str]) -> Optional[str]:
    if not unit:
        return None
    stripped = unit.strip()
    if stripped in SUPPORTED_UNITS:
        return stripped
    return UNIT_SYNONYMS.get(stripped.lower())


def is_liquid_unit(unit: str) -> bool:
    return unit.lower().strip() in LIQUID_CONVERSIONS


def convert_to_ml(value: float, unit: str) -> float:
    factor = LIQUID_CONVERSIONS.get(unit.lower().strip())
    if factor is None:
        raise ValueError(f"Unknown liquid unit: {unit}")
    return value * factor


def get_actuations_per_canister(drug_name: Optional[str]) -> Optional[int]:
    """
    Число нажатий по названию. None, если препарат не из справочника.
    """
    if not drug_name:
        return None
    normalized = drug_name.lower()
    for key, value in ACTUATION_COUNTS.items():
        if key in normalized:
            return value
    return None


def detect_concentration(*texts: Optional[str]) -> Optional[int]:
    """
    Ищет маркер концентрации (U-100, U200, 100 UNITS/mL, 100 [iU]/mL).
    """
    for text in texts:
        if not text:
            continue
        for pattern in _CONCENTRATION_PATTERNS:
            match = pattern.search(text)
            if match:
                value = int(match.group(1))
                if value > 0:
                    return value
    return None


def is_insulin_name(*texts: Optional[str]) -> bool:
    joined = " ".join(t.lower() for t in texts if t)
    return any(keyword in joined for keyword in INSULIN_KEYWORDS)
