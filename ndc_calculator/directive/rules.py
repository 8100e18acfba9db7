# ndc_calculator/directive/rules.py
"""
Детерминированный разбор SIG набором правил.

Сначала текст нормализуется (сокращения, числительные, дроби), затем
правило каждого семейства единиц (таблетки/капсулы, жидкости, ингаляторы,
инъекции) ищет дозу, а общий набор шаблонов ищет кратность приёма.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Tuple

from ndc_calculator.calculator.units import UNIT_SYNONYMS, convert_to_ml, is_liquid_unit
from ndc_calculator.data_models import ParsedDirective, ParseMethod, UnitConversion

_NUMBER = r"\d+(?:\.\d+)?"

NUMBER_WORDS: Dict[str, int] = {
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
    "eleven": 11,
    "twelve": 12,
}

# Сокращения, которые раскрываем до разбора
ABBREVIATIONS: Dict[str, str] = {
    "po": "by mouth",
    "sq": "subcutaneously",
    "sc": "subcutaneously",
    "subq": "subcutaneously",
    "sl": "under the tongue",
    "qd": "once daily",
    "od": "once daily",
    "bid": "twice daily",
    "tid": "3 times daily",
    "qid": "4 times daily",
    "qhs": "at bedtime",
    "hs": "at bedtime",
    "qam": "in the morning",
    "qpm": "in the evening",
    "qod": "every other day",
    "prn": "as needed",
    "qwk": "once weekly",
}

_ABBREVIATION_RE = re.compile(r"\b(" + "|".join(sorted(ABBREVIATIONS, key=len, reverse=True)) + r")\b")
_NUMBER_WORD_RE = re.compile(r"\b(" + "|".join(NUMBER_WORDS) + r")\b")
_Q_HOURS_RE = re.compile(r"\bq\s*(\d+)(?:\s*-\s*(\d+))?\s*(?:h|hr|hrs|hours?)\b")
_MIXED_FRACTION_RE = re.compile(r"\b(\d+)\s+(\d+)/(\d+)\b")
_FRACTION_RE = re.compile(r"\b(\d+)/(\d+)\b")

TIME_OF_DAY = (
    "in the morning",
    "every morning",
    "at breakfast",
    "at noon",
    "at lunch",
    "in the afternoon",
    "in the evening",
    "every evening",
    "at dinner",
    "at supper",
    "at bedtime",
    "before bed",
    "at night",
)

MEALS = ("breakfast", "lunch", "dinner", "supper")
# "with meals" без уточнения считаем тремя приёмами
ALL_MEALS = ("meals", "each meal", "every meal")


@dataclass(frozen=True)
class UnitFamily:
    name: str
    words: FrozenSet[str]

    @property
    def pattern(self) -> str:
        return "|".join(sorted((re.escape(w) for w in self.words), key=len, reverse=True))


SOLID = UnitFamily("solid", frozenset({"tablet", "tablets", "tab", "tabs", "capsule", "capsules", "cap", "caps"}))
LIQUID = UnitFamily(
    "liquid",
    frozenset(
        {
            "ml",
            "mls",
            "milliliter",
            "milliliters",
            "millilitre",
            "millilitres",
            "cc",
            "teaspoon",
            "teaspoons",
            "tsp",
            "tablespoon",
            "tablespoons",
            "tbsp",
            "oz",
            "ounce",
            "ounces",
        }
    ),
)
INHALER = UnitFamily(
    "inhaler",
    frozenset({"puff", "puffs", "actuation", "actuations", "inhalation", "inhalations", "spray", "sprays"}),
)
INJECTABLE = UnitFamily("injectable", frozenset({"unit", "units", "iu"}))

UNIT_FAMILIES: Tuple[UnitFamily, ...] = (SOLID, LIQUID, INHALER, INJECTABLE)


@dataclass(frozen=True)
class DoseMatch:
    quantity: float  # верхняя граница, если указан диапазон
    unit: str  # каноническая единица
    raw_unit: str
    start: int
    end: int
    conversion: Optional[UnitConversion] = None


def normalize_sig(sig: str) -> str:
    """
    Приводит SIG к единому виду: нижний регистр, без точек в сокращениях,
    числительные и дроби цифрами, сокращения раскрыты.
    """
    text = (sig or "").lower().strip()
    text = re.sub(r"(?<=[a-z])\.(?=[a-z])", "", text)  # b.i.d -> bid
    text = re.sub(r"(?<=[a-z])\.(?=\s|,|;|$)", "", text)
    text = re.sub(r"(\d),(\d{3})\b", r"\1\2", text)

    text = re.sub(r"\bone and (?:a|one) half\b", "1.5", text)
    text = re.sub(r"\b(?:one|a)[\s-]half\b", "0.5", text)
    text = re.sub(r"\bhalf(?:\s+(?:a|of a|of))?\b", "0.5", text)
    text = _NUMBER_WORD_RE.sub(lambda m: str(NUMBER_WORDS[m.group(1)]), text)
    text = _MIXED_FRACTION_RE.sub(
        lambda m: _format_number(int(m.group(1)) + int(m.group(2)) / int(m.group(3))), text
    )
    text = _FRACTION_RE.sub(lambda m: _format_number(int(m.group(1)) / int(m.group(2))), text)

    text = _Q_HOURS_RE.sub(
        lambda m: f"every {m.group(1)}-{m.group(2)} hours" if m.group(2) else f"every {m.group(1)} hours", text
    )
    text = _ABBREVIATION_RE.sub(lambda m: ABBREVIATIONS[m.group(1)], text)

    text = re.sub(r"\btwice\b", "2 times", text)
    text = re.sub(r"\bthrice\b", "3 times", text)
    text = re.sub(r"\bonce\b", "1 times", text)
    return re.sub(r"\s+", " ", text).strip()


def _format_number(value: float) -> str:
    return f"{value:g}"


def _dose_regex(family: UnitFamily) -> re.Pattern:
    return re.compile(
        rf"(?<![\d.])(?P<qty>{_NUMBER})(?:\s*(?:-|to|or)\s*(?P<qty_hi>{_NUMBER}))?\s*(?P<unit>{family.pattern})\b"
    )


_DOSE_REGEXES = {family.name: _dose_regex(family) for family in UNIT_FAMILIES}


def _to_dose(match: re.Match) -> DoseMatch:
    quantity = float(match.group("qty"))
    if match.group("qty_hi"):
        # Диапазон: берём верхнюю границу, чтобы не недодать
        quantity = max(quantity, float(match.group("qty_hi")))
    raw_unit = match.group("unit")
    conversion = None
    if is_liquid_unit(raw_unit):
        converted = convert_to_ml(quantity, raw_unit)
        if converted != quantity:
            conversion = UnitConversion(from_unit=raw_unit, to_unit="mL", original=quantity, converted=converted)
        quantity = converted
    return DoseMatch(
        quantity=quantity,
        unit=UNIT_SYNONYMS.get(raw_unit, raw_unit),
        raw_unit=raw_unit,
        start=match.start(),
        end=match.end(),
        conversion=conversion,
    )


def extract_dose(text: str, family: UnitFamily) -> Optional[DoseMatch]:
    match = _DOSE_REGEXES[family.name].search(text)
    if not match:
        return None
    return _to_dose(match)


_EVERY_OTHER_DAY = re.compile(r"\bevery other day\b")
_EVERY_N_HOURS = re.compile(rf"\bevery ({_NUMBER})(?:\s*(?:-|to)\s*({_NUMBER}))? hours?\b")
_EVERY_HOUR = re.compile(r"\bevery hour\b")
_TIMES_PER = re.compile(
    rf"\b({_NUMBER})(?:\s*(?:-|to)\s*({_NUMBER}))? times (?:a |per |each |every )?(day|daily|week|weekly)\b"
)
_EVERY_N_DAYS = re.compile(rf"\bevery ({_NUMBER}) days\b")
_WEEKLY = re.compile(r"\b(?:weekly|every week|a week|per week)\b")
_ONCE_A_DAY = re.compile(
    r"\b(?:daily|every day|a day|per day|each day|every morning|every evening|every night|nightly"
    r"|at bedtime|before bed|in the morning|in the evening|at night)\b"
)


def extract_frequency(text: str) -> Optional[float]:
    """
    Число приёмов в сутки. Для диапазонов берём более частый вариант.
    """
    if _EVERY_OTHER_DAY.search(text):
        return 0.5

    match = _EVERY_N_HOURS.search(text)
    if match:
        interval = float(match.group(1))
        if match.group(2):
            interval = min(interval, float(match.group(2)))
        if interval <= 0:
            return None
        return 24 / interval

    if _EVERY_HOUR.search(text):
        return 24.0

    match = _TIMES_PER.search(text)
    if match:
        times = float(match.group(1))
        if match.group(2):
            times = max(times, float(match.group(2)))
        if match.group(3).startswith("week"):
            return times / 7
        return times

    match = _EVERY_N_DAYS.search(text)
    if match and float(match.group(1)) > 0:
        return 1 / float(match.group(1))

    if _WEEKLY.search(text):
        return 1 / 7

    if _ONCE_A_DAY.search(text):
        return 1.0

    return None


def _alternation(phrases: Tuple[str, ...]) -> str:
    return "|".join(re.escape(p) for p in sorted(phrases, key=len, reverse=True))


# "in the morning", "with dinner", "before meals", "at 8am", "8:30 pm"
_TIME_MARKER = re.compile(
    rf"\b(?:(?P<all_meals>(?:with|before|after) (?:{_alternation(ALL_MEALS)}))"
    rf"|{_alternation(TIME_OF_DAY)}"
    rf"|(?:with|before|after|at) (?:{_alternation(MEALS)})"
    r"|\d{1,2}(?::\d{2})?\s*(?:am|pm))\b"
)
# Между дозами только скобка или косая черта: "5 mL (1 teaspoon)"
_RESTATEMENT = re.compile(r"^\s*[(/=]?\s*$")


def count_time_markers(text: str) -> int:
    """
    Сколько приёмов названо через время суток, еду или часы.
    """
    count = 0
    for match in _TIME_MARKER.finditer(text):
        count += 3 if match.group("all_meals") else 1
    return count


def _is_restatement(doses: List[DoseMatch], text: str) -> bool:
    if len(doses) != 2:
        return False
    first, second = doses
    return (
        first.unit == second.unit
        and abs(first.quantity - second.quantity) < 1e-9
        and bool(_RESTATEMENT.match(text[first.end : second.start]))
    )


@dataclass(frozen=True)
class RuleMatcher:
    """
    Правило для одного семейства единиц.

    Одна доза: доза × кратность. Несколько доз при указании времени суток
    суммируются. Несколько доз без времени суток правилами не разбираются,
    их отдаём fallback.
    """
    family: UnitFamily

    @property
    def name(self) -> str:
        return self.family.name

    def find_doses(self, text: str) -> List[DoseMatch]:
        return [_to_dose(m) for m in _DOSE_REGEXES[self.name].finditer(text)]

    def match_time_based(self, text: str, doses: List[DoseMatch]) -> Optional[ParsedDirective]:
        if not _TIME_MARKER.search(text):
            return None
        if len({d.unit for d in doses}) != 1:
            return None

        per_day = sum(d.quantity for d in doses)
        conversion = next((d.conversion for d in doses if d.conversion is not None), None)
        return ParsedDirective(
            method=ParseMethod.RULES,
            dose_unit=doses[0].unit,
            per_day=per_day,
            quantity_per_dose=max(d.quantity for d in doses),
            frequency_per_day=float(len(doses)),
            sub_method=f"{self.name}/time-based",
            unit_conversion=conversion,
        )

    def match(self, text: str) -> Optional[ParsedDirective]:
        doses = self.find_doses(text)
        if not doses or any(d.quantity <= 0 for d in doses):
            return None

        if len(doses) > 1 and not _is_restatement(doses, text):
            return self.match_time_based(text, doses)

        dose = doses[0]
        frequency = extract_frequency(text)
        markers = count_time_markers(text)
        sub_method = f"{self.name}/frequency-based"
        if markers and (frequency is None or (frequency == 1 and markers > 1)):
            frequency = float(markers)
            sub_method = f"{self.name}/time-based"
        if frequency is None:
            return None

        return ParsedDirective(
            method=ParseMethod.RULES,
            dose_unit=dose.unit,
            per_day=dose.quantity * frequency,
            quantity_per_dose=dose.quantity,
            frequency_per_day=frequency,
            sub_method=sub_method,
            unit_conversion=dose.conversion,
        )


DEFAULT_MATCHERS: Tuple[RuleMatcher, ...] = tuple(RuleMatcher(family) for family in UNIT_FAMILIES)


def parse_with_rules(sig: str, matchers: Tuple[RuleMatcher, ...] = DEFAULT_MATCHERS) -> Optional[ParsedDirective]:
    """
    Разбор правилами. None, если ни одно правило не подошло.

    Если в тексте есть дозы разных семейств, выигрывает та, что встречается раньше.
    """
    text = normalize_sig(sig)
    if not text:
        return None

    candidates: List[Tuple[int, RuleMatcher]] = []
    for matcher in matchers:
        dose = extract_dose(text, matcher.family)
        if dose is not None:
            candidates.append((dose.start, matcher))

    for _, matcher in sorted(candidates, key=lambda item: item[0]):
        result = matcher.match(text)
        if result is not None:
            return result
    return None
