# ndc_calculator/selection/package_selector.py
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ndc_calculator.config import SelectionConfig, config
from ndc_calculator.data_models import PackageOption, PackageRecord, SelectionResult
from ndc_calculator.upstream.ndc import normalize_ndc

logger = logging.getLogger(__name__)

NO_SUITABLE_PACKAGE = "No suitable package found matching quantity requirements"
NO_ACTIVE_NDCS = "No active NDCs available for this drug"

# Сравнение процентов с допуском на погрешность float
_EPSILON = 1e-9


def overfill_percent(provided: float, required: float) -> float:
    return (provided - required) / required * 100


def score_option(option: PackageOption, preferred: bool) -> Tuple:
    """
    Составной ключ, меньше значит лучше:
    активные раньше неактивных, меньше упаковок, меньше перерасход,
    предпочтительный код, больший размер упаковки, NDC для детерминизма.
    """
    return (
        0 if option.active else 1,
        option.packs,
        round(option.overfill, 6),
        0 if preferred else 1,
        -option.pkg_size,
        option.ndc,
    )


def enumerate_options(
    required: float,
    records: Iterable[PackageRecord],
    preferred: Sequence[str] = (),
    selection_config: Optional[SelectionConfig] = None,
) -> List[PackageOption]:
    """
    Все допустимые варианты код × число упаковок (1..max_packs),
    без недостачи и без перерасхода сверх лимита, отсортированные по score.
    """
    selection_config = selection_config or config.selection
    preferred_set = {normalize_ndc(ndc) for ndc in preferred}
    options: List[PackageOption] = []

    for record in records:
        if record.pkg_size <= 0:
            continue
        for packs in range(1, selection_config.max_packs + 1):
            provided = record.pkg_size * packs
            overfill = overfill_percent(provided, required)
            if overfill < -_EPSILON:
                continue
            if overfill > selection_config.max_overfill_percent + _EPSILON:
                # Дальше перерасход только растёт
                break
            option = PackageOption(
                ndc=record.ndc,
                pkg_size=record.pkg_size,
                active=record.active,
                packs=packs,
                overfill=max(overfill, 0.0),
                dosage_form=record.dosage_form,
                brand_name=record.brand_name,
            )
            scored = replace(option, score=score_option(option, record.ndc in preferred_set))
            options.append(scored)

    options.sort(key=lambda opt: opt.score)
    return options


def _rejection_note(required: float, records: Sequence[PackageRecord], selection_config: SelectionConfig) -> str:
    sized = [r for r in records if r.pkg_size > 0]
    if not sized:
        return f"{NO_SUITABLE_PACKAGE}: no package size information available"

    best_overfill: Optional[float] = None
    for record in sized:
        for packs in range(1, selection_config.max_packs + 1):
            overfill = overfill_percent(record.pkg_size * packs, required)
            if overfill >= 0:
                best_overfill = overfill if best_overfill is None else min(best_overfill, overfill)
                break

    if best_overfill is None:
        return (
            f"{NO_SUITABLE_PACKAGE}: {selection_config.max_packs} packs of the largest package "
            f"do not cover {required:g}"
        )
    return (
        f"{NO_SUITABLE_PACKAGE}: closest option overfills by {best_overfill:.1f}% "
        f"(limit {selection_config.max_overfill_percent:g}%)"
    )


def select_packages(
    required: float,
    records: Iterable[PackageRecord],
    preferred_ndcs: Sequence[str] = (),
    selection_config: Optional[SelectionConfig] = None,
) -> SelectionResult:
    """
    Выбор упаковки под требуемое количество.

    Неактивный код выбирается, только если ни один активный вариант не подошёл.
    Если в каталоге вообще нет активных кодов, выбора нет.
    """
    selection_config = selection_config or config.selection
    if required <= 0:
        return SelectionResult(chosen=None, notes=(f"{NO_SUITABLE_PACKAGE}: required quantity is zero",))

    catalog: Dict[str, PackageRecord] = {}
    for record in records:
        catalog.setdefault(record.ndc, record)
    unique: List[PackageRecord] = list(catalog.values())

    if not unique:
        return SelectionResult(chosen=None, notes=(f"{NO_SUITABLE_PACKAGE}: no packages available",))

    if not any(record.active for record in unique):
        logger.warning("Only inactive NDCs available (%s)", len(unique))
        return SelectionResult(chosen=None, notes=(NO_ACTIVE_NDCS,))

    options = enumerate_options(required, unique, preferred_ndcs, selection_config)
    if not selection_config.allow_inactive_fallback:
        options = [opt for opt in options if opt.active]

    if not options:
        note = _rejection_note(required, unique, selection_config)
        logger.warning("Package selection failed for required quantity %s", required)
        return SelectionResult(chosen=None, notes=(note,))

    chosen = options[0]
    alternates = tuple(options[1 : 1 + selection_config.max_alternates])
    notes: List[str] = []

    if not chosen.active:
        notes.append(f"Chosen NDC {chosen.ndc} is inactive - no active package satisfies the quantity")

    inference = catalog[chosen.ndc].size_inference
    if inference.low_confidence:
        notes.append(f"Package size for NDC {chosen.ndc} is inferred ({inference.detail}) - verify before dispensing")

    logger.info(
        "Chosen NDC %s x %s (overfill %.2f%%), %s alternates",
        chosen.ndc,
        chosen.packs,
        chosen.overfill,
        len(alternates),
    )
    return SelectionResult(chosen=chosen, alternates=alternates, notes=tuple(notes))
