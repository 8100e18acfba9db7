# ndc_calculator/upstream/ndc.py
"""Нормализация NDC к каноническому 11-значному виду 5-4-2."""
from __future__ import annotations

import re
from typing import List

_HYPHENATED = re.compile(r"^(\d{4,5})-(\d{3,4})-(\d{1,2})$")
_DIGITS_ONLY = re.compile(r"^\d{10,11}$")
_NDC_LIKE = re.compile(r"^\s*(\d{4,5}-\d{3,4}-\d{1,2}|\d{10,11})\s*$")


def looks_like_ndc(value: str) -> bool:
    return bool(value) and bool(_NDC_LIKE.match(value))


def normalize_ndc(ndc: str) -> str:
    """
    Приводит NDC к 11 цифрам без дефисов.

    - 4-4-2, 5-3-2, 5-4-1 с дефисами: дополняем нулём нужный сегмент;
    - 10 цифр без дефисов: сегменты неизвестны, дополняем нулём слева;
    - всё остальное возвращаем очищенным от дефисов и пробелов как есть.
    """
    cleaned = (ndc or "").strip().replace(" ", "")
    match = _HYPHENATED.match(cleaned)
    if match:
        labeler, product, package = match.groups()
        return labeler.zfill(5) + product.zfill(4) + package.zfill(2)

    digits = cleaned.replace("-", "")
    if len(digits) == 10 and digits.isdigit():
        return f"0{digits}"
    return digits


def ten_digit_variants(ndc11: str) -> List[str]:
    """
    Возможные 10-значные формы с дефисами, в которых openFDA хранит код.

    Из 11-значного кода однозначно обратно не восстановить, поэтому
    возвращаем все варианты, где убираемый ведущий ноль действительно есть.
    """
    ndc11 = normalize_ndc(ndc11)
    if not _DIGITS_ONLY.match(ndc11) or len(ndc11) != 11:
        return []

    labeler, product, package = ndc11[:5], ndc11[5:9], ndc11[9:]
    variants: List[str] = []
    if labeler.startswith("0"):
        variants.append(f"{labeler[1:]}-{product}-{package}")
    if product.startswith("0"):
        variants.append(f"{labeler}-{product[1:]}-{package}")
    if package.startswith("0"):
        variants.append(f"{labeler}-{product}-{package[1:]}")
    return variants
