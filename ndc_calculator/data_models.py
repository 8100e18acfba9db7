# ndc_calculator/data_models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ComputeRequest:
    """
    Входной запрос на расчёт. Уже провалидирован снаружи.
    """
    drug_input: str  # Название препарата или NDC
    sig: str  # Инструкция по применению (свободный текст)
    days_supply: int  # На сколько дней отпускаем
    preferred_ndcs: Tuple[str, ...] = ()  # Только bias при ранжировании, не фильтр
    quantity_unit_override: Optional[str] = None  # tab | cap | mL | actuation | unit


@dataclass(frozen=True)
class NormalizedDrug:
    rxcui: str
    name: str


@dataclass(frozen=True)
class SizeInference:
    """
    Как был получен размер упаковки. Для инъекционных форм это эвристика,
    поэтому отмечаем низкую уверенность, если пришлось брать значения по умолчанию.
    """
    method: str  # injectable | package_size_field | package_description | packaging | none
    low_confidence: bool = False
    detail: str = ""


@dataclass(frozen=True)
class PackageRecord:
    """
    Упаковка из источника данных об упаковках (openFDA).
    """
    ndc: str  # Каноническая 11-значная форма
    pkg_size: int  # Размер упаковки в единицах отпуска
    active: bool
    dosage_form: Optional[str] = None
    brand_name: Optional[str] = None
    description: Optional[str] = None  # Сырое описание, нужно для вывода объёма инъекционных форм
    size_inference: SizeInference = SizeInference(method="none")


@dataclass(frozen=True)
class CodeStatus:
    """
    NDC из RxNorm. active=None: RxNorm ничего не говорит о статусе.
    """
    ndc: str
    active: Optional[bool] = True


@dataclass(frozen=True)
class IdentityResult:
    """
    Результат ветки нормализации (RxNorm): концепт и список кандидатов NDC.
    """
    drug: Optional[NormalizedDrug]
    codes: Tuple[CodeStatus, ...] = ()


class ParseMethod(str, Enum):
    RULES = "rules"
    AI = "ai"
    FAILED = "failed"


@dataclass(frozen=True)
class UnitConversion:
    from_unit: str
    to_unit: str
    original: float
    converted: float


@dataclass(frozen=True)
class ParsedDirective:
    """
    Разобранный SIG. Ровно один на запрос.

    Для method=FAILED числовые поля пустые, а reason объясняет, что не так.
    """
    method: ParseMethod
    dose_unit: Optional[str] = None
    per_day: Optional[float] = None
    quantity_per_dose: Optional[float] = None
    frequency_per_day: Optional[float] = None
    sub_method: Optional[str] = None  # frequency-based | time-based | <имя правила>
    unit_conversion: Optional[UnitConversion] = None
    reason: str = ""

    @property
    def parsed(self) -> bool:
        return self.method is not ParseMethod.FAILED and self.per_day is not None


@dataclass(frozen=True)
class RoundingTrace:
    rule: str
    before: float
    after: float


@dataclass(frozen=True)
class RequiredQuantity:
    dose_unit: str
    per_day: float
    total_qty: float
    days_supply: int
    rounding: RoundingTrace
    dosage_form: Optional[str] = None


@dataclass(frozen=True)
class PackageOption:
    """
    Кандидат: код × количество упаковок.

    overfill: процент перерасхода, score: составной ключ ранжирования
    (меньше значит лучше).
    """
    ndc: str
    pkg_size: int
    active: bool
    packs: int
    overfill: float
    score: Tuple[Any, ...] = ()
    dosage_form: Optional[str] = None
    brand_name: Optional[str] = None

    @property
    def provided(self) -> int:
        return self.pkg_size * self.packs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ndc": self.ndc,
            "pkg_size": self.pkg_size,
            "active": self.active,
            "packs": self.packs,
            "overfill": round(self.overfill, 2),
            "score": list(self.score),
            "dosage_form": self.dosage_form,
            "brand_name": self.brand_name,
        }


@dataclass(frozen=True)
class SelectionResult:
    chosen: Optional[PackageOption]
    alternates: Tuple[PackageOption, ...] = ()
    notes: Tuple[str, ...] = ()


@dataclass
class ComputeFlags:
    inactive_ndcs: List[str] = field(default_factory=list)
    mismatch: bool = False
    notes: List[str] = field(default_factory=list)
    error_code: Optional[str] = None


@dataclass
class ComputeResult:
    """
    Итог расчёта, который видит внешний слой.
    """
    drug: NormalizedDrug
    quantity: RequiredQuantity
    directive: ParsedDirective
    selection: SelectionResult
    flags: ComputeFlags

    def to_dict(self) -> Dict[str, Any]:
        chosen = self.selection.chosen
        return {
            "rxnorm": {"rxcui": self.drug.rxcui, "name": self.drug.name},
            "computed": {
                "dose_unit": self.quantity.dose_unit,
                "per_day": self.quantity.per_day,
                "total_qty": self.quantity.total_qty,
                "days_supply": self.quantity.days_supply,
                "dosage_form": self.quantity.dosage_form,
                "parse_method": self.directive.method.value,
                "rounding": {
                    "rule": self.quantity.rounding.rule,
                    "before": self.quantity.rounding.before,
                    "after": self.quantity.rounding.after,
                },
            },
            "ndc_selection": {
                "chosen": chosen.to_dict() if chosen else None,
                "alternates": [alt.to_dict() for alt in self.selection.alternates],
            },
            "flags": {
                "inactive_ndcs": list(self.flags.inactive_ndcs),
                "mismatch": self.flags.mismatch,
                "notes": list(self.flags.notes),
                "error_code": self.flags.error_code,
            },
        }


@dataclass
class RequestContext:
    """
    Контекст одного запроса: correlation id и заметки о деградированном режиме,
    которые клиенты источников добавляют по ходу работы.
    """
    correlation_id: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    def add_note(self, note: str) -> None:
        if note not in self.notes:
            self.notes.append(note)
