# ndc_calculator/directive/prompt_builder.py
from __future__ import annotations

from dataclasses import dataclass

from ndc_calculator.calculator.units import SUPPORTED_UNITS


PROMPT_SYSTEM_INSTRUCTIONS = """
You are a pharmacy assistant that interprets prescription directions (SIG).

Your task:
1) Read the free-text directions exactly as written by the prescriber.
2) Determine the dispensing unit of one dose.
3) Determine how many units are taken per administration and how many administrations happen per day.
4) Compute the total units consumed per day.
5) If the directions give a range ("1-2 tablets"), use the upper bound.
6) Convert liquid measures to mL (1 teaspoon = 5 mL, 1 tablespoon = 15 mL, 1 oz = 30 mL).
7) If the directions are "as needed" without a maximum, or cannot be interpreted, set "parsed" to false.
8) Do NOT invent doses that are not present in the text.
""".strip()


PROMPT_OUTPUT_FORMAT = r"""
Return strictly a JSON object with these top-level fields:
{
  "parsed": bool,
  "dose_unit": "tab" | "cap" | "mL" | "actuation" | "unit" | null,
  "quantity_per_dose": float | null,
  "frequency_per_day": float | null,
  "per_day": float | null,
  "reason": str  // short explanation
}
No comments or text outside the JSON.
""".strip()


@dataclass
class PromptBuilder:
    """
    Строитель промпта для разбора одной инструкции.
    """

    def build_units_block(self) -> str:
        return "Allowed units: " + ", ".join(SUPPORTED_UNITS)

    def build_user_prompt(self, sig: str) -> str:
        """
        Основной текст запроса (user message) к модели.
        """
        prompt = f"""
Directions (SIG): "{sig}"

{self.build_units_block()}

{PROMPT_OUTPUT_FORMAT}
""".strip()

        return prompt
