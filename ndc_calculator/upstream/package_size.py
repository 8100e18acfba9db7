# ndc_calculator/upstream/package_size.py
"""
Единая нормализация размера упаковки из разнородных ответов openFDA.

Порядок источников (первый сработавший выигрывает):

1. инъекционная форма с дозированием в единицах: концентрация (по умолчанию
   100 ед/mL) × объём (из описания, иначе типовой объём для pen/vial/cartridge)
   × количество контейнеров;
2. явное числовое поле package_size;
3. текстовое описание упаковки (description / package_description);
4. описание первой вложенной записи packaging;
5. ничего не нашли: размер 0, такую упаковку подобрать нельзя.

Эвристика для инъекционных форм не подтверждена справочником, поэтому
если пришлось взять концентрацию или объём по умолчанию, результат
помечается low_confidence, а не принимается молча.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple

from ndc_calculator.calculator.units import (
    DEFAULT_FILL_VOLUME_ML,
    DEFAULT_INHALER_ACTUATIONS,
    DEFAULT_INSULIN_CONCENTRATION,
    detect_concentration,
    get_actuations_per_canister,
    is_insulin_name,
)
from ndc_calculator.data_models import SizeInference

# "100 mL in 1 BOTTLE", "5 PEN in 1 CARTON", "200 AEROSOL, METERED in 1 INHALER"
_SEGMENT = re.compile(
    r"^\s*(\d+(?:\.\d+)?)\s+(.+?)\s+in\s+(\d+(?:\.\d+)?)\s+(.+?)\s*(?:\(.*\))?\s*$",
    re.IGNORECASE,
)
_LEADING_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")

_CONTAINER_WORDS = {
    "pen": ("PEN", "KWIKPEN", "FLEXPEN", "FLEXTOUCH", "SOLOSTAR", "INJECTOR"),
    "cartridge": ("CARTRIDGE",),
    "vial": ("VIAL",),
    "syringe": ("SYRINGE",),
}
_CONTAINER_PATTERNS = {
    kind: re.compile(r"\b(?:" + "|".join(words) + r")S?\b") for kind, words in _CONTAINER_WORDS.items()
}
_INHALER_CONTAINERS = ("INHALER", "CANISTER", "AEROSOL")


@dataclass(frozen=True)
class _Segment:
    quantity: float
    unit: str  # внутренняя единица сегмента (что лежит)
    container: str  # во что вложено


def parse_description_chain(description: Optional[str]) -> List[_Segment]:
    """
    Разбирает описание вида "1 BOTTLE in 1 CARTON > 100 mL in 1 BOTTLE"
    на сегменты от внешнего к внутреннему.
    """
    if not description:
        return []
    segments: List[_Segment] = []
    for raw in description.split(">"):
        match = _SEGMENT.match(raw)
        if not match:
            continue
        segments.append(
            _Segment(
                quantity=float(match.group(1)),
                unit=match.group(2).strip().upper(),
                container=match.group(4).strip().upper(),
            )
        )
    return segments


def _chain_total(segments: List[_Segment]) -> float:
    return math.prod(seg.quantity for seg in segments)


def _container_kind(text: str) -> Optional[str]:
    upper = text.upper()
    for kind, pattern in _CONTAINER_PATTERNS.items():
        if pattern.search(upper):
            return kind
    return None


def _size_from_description(description: Optional[str]) -> Optional[int]:
    segments = parse_description_chain(description)
    if segments:
        total = _chain_total(segments)
        if total > 0:
            return int(round(total))

    # Описание без структуры "N X in 1 Y": берём первое число
    if description:
        match = _LEADING_NUMBER.search(description)
        if match:
            value = int(float(match.group(1)))
            if value > 0:
                return value
    return None


def _is_unit_dosed_injectable(product: Mapping[str, Any], description: Optional[str]) -> bool:
    dosage_form = str(product.get("dosage_form") or "").upper()
    names = (product.get("brand_name"), product.get("generic_name"), description)
    if is_insulin_name(*names):
        return True
    if "INJECT" in dosage_form and detect_concentration(*names, _strength_text(product)) is not None:
        return True
    return False


def _strength_text(product: Mapping[str, Any]) -> str:
    ingredients = product.get("active_ingredients") or []
    parts = []
    for ingredient in ingredients:
        if isinstance(ingredient, Mapping) and ingredient.get("strength"):
            parts.append(str(ingredient["strength"]))
    return " ".join(parts)


def _injectable_units(product: Mapping[str, Any], description: Optional[str]) -> Tuple[Optional[int], SizeInference]:
    notes: List[str] = []
    low_confidence = False

    concentration = detect_concentration(
        description, product.get("brand_name"), product.get("generic_name"), _strength_text(product)
    )
    if concentration is None:
        concentration = DEFAULT_INSULIN_CONCENTRATION
        low_confidence = True
        notes.append(f"concentration defaulted to {concentration} units/mL")

    segments = parse_description_chain(description)
    volume_ml: Optional[float] = None
    containers = 1.0
    kind: Optional[str] = None

    if segments:
        innermost = segments[-1]
        kind = _container_kind(innermost.container)
        if innermost.unit in ("ML", "MILLILITER", "MILLILITERS"):
            # "5 PEN in 1 CARTON > 3 mL in 1 PEN" -> 5 * 3 mL
            volume_ml = _chain_total(segments)
        else:
            kind = kind or _container_kind(innermost.unit)
            containers = _chain_total(segments)

    if volume_ml is None:
        kind = kind or _container_kind(description or "") or _container_kind(str(product.get("dosage_form") or ""))
        if kind is None:
            return None, SizeInference(method="injectable", low_confidence=True, detail="no container detected")
        volume_ml = DEFAULT_FILL_VOLUME_ML[kind] * containers
        low_confidence = True
        notes.append(f"fill volume defaulted to {DEFAULT_FILL_VOLUME_ML[kind]:g} mL per {kind}")

    units = int(round(volume_ml * concentration))
    detail = f"{volume_ml:g} mL x {concentration} units/mL"
    if notes:
        detail += " (" + "; ".join(notes) + ")"
    return units, SizeInference(method="injectable", low_confidence=low_confidence, detail=detail)


def _inhaler_actuations(product: Mapping[str, Any], description: Optional[str]) -> Optional[Tuple[int, SizeInference]]:
    """
    Упаковка ингалятора, где указано только число баллончиков:
    берём типовое число нажатий для препарата.
    """
    segments = parse_description_chain(description)
    if not segments:
        return None
    innermost = segments[-1]
    if "METERED" in innermost.unit or "ACTUATION" in innermost.unit or "SPRAY" in innermost.unit:
        return None
    if not any(word in innermost.unit for word in _INHALER_CONTAINERS):
        return None

    actuations = get_actuations_per_canister(product.get("brand_name")) or get_actuations_per_canister(
        product.get("generic_name")
    )
    detail = ""
    if actuations is None:
        actuations = DEFAULT_INHALER_ACTUATIONS
        detail = ", actuations defaulted"
    canisters = _chain_total(segments)
    return int(round(canisters * actuations)), SizeInference(
        method="inhaler_default",
        low_confidence=True,
        detail=f"{canisters:g} canister(s) x {actuations} actuations{detail}",
    )


def normalize_package_size(
    product: Mapping[str, Any],
    packaging: Optional[Mapping[str, Any]] = None,
) -> Tuple[int, SizeInference]:
    """
    Возвращает (размер упаковки, как он был получен).

    product: запись openFDA, packaging: конкретная вложенная упаковка
    (если продукт раскрыт по упаковкам).
    """
    description = None
    if packaging is not None:
        description = packaging.get("description")
    description = description or product.get("package_description")

    # 1. Инъекционные формы с дозированием в единицах
    if _is_unit_dosed_injectable(product, description):
        units, inference = _injectable_units(product, description)
        if units:
            return units, inference

    # 2. Явное поле
    raw_size = product.get("package_size")
    if raw_size not in (None, ""):
        match = _LEADING_NUMBER.search(str(raw_size))
        if match:
            value = int(float(match.group(1)))
            if value > 0:
                return value, SizeInference(method="package_size_field")

    # 3. Описание этой упаковки
    inhaler = _inhaler_actuations(product, description)
    if inhaler is not None:
        return inhaler

    size = _size_from_description(description)
    if size:
        return size, SizeInference(method="package_description")

    # 4. Первая вложенная упаковка
    nested = product.get("packaging")
    if packaging is None and isinstance(nested, list) and nested:
        first = nested[0]
        if isinstance(first, Mapping):
            size = _size_from_description(first.get("description"))
            if size:
                return size, SizeInference(method="packaging")

    return 0, SizeInference(method="none", detail="package size not found")
