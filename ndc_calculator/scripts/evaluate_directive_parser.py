# ndc_calculator/scripts/evaluate_directive_parser.py
import argparse
import asyncio
import logging
from typing import List, Tuple

import pandas as pd

from ndc_calculator.data_models import ParsedDirective
from ndc_calculator.directive.parser import DirectiveParser, create_directive_interpreter

TESTSET_PATH = "data/directive_testset.csv"

# Допуск при сравнении расхода в сутки
PER_DAY_TOLERANCE = 1e-6


def load_testset(path: str = TESTSET_PATH) -> pd.DataFrame:
    df = pd.read_csv(path)

    required_cols = ["sig", "expected_unit", "expected_per_day"]
    missing = [c for c in required_cols if c not in df.columns]
    if missing:
        raise ValueError(f"Missing columns in testset: {missing}")

    # Убираем строки без инструкции
    df = df[~df["sig"].isna()]
    df["expected_unit"] = df["expected_unit"].fillna("")

    return df


async def evaluate_directive_parser(path: str = TESTSET_PATH, use_fallback: bool = False) -> pd.DataFrame:
    """
    Прогоняет парсер SIG по тестовому набору.

    Считает:
    - долю разобранных инструкций по каждому методу (rules / ai / failed);
    - точность per_day и единицы среди разобранных;
    - выводит примеры расхождений.
    """
    df = load_testset(path)

    interpreter = create_directive_interpreter() if use_fallback else None
    parser = DirectiveParser(interpreter=interpreter, enabled=use_fallback)

    # (sig, method, expected_unit, unit, expected_per_day, per_day, correct)
    rows: List[Tuple[str, str, str, str, float, float, bool]] = []

    for idx, (_, row) in enumerate(df.iterrows(), start=1):
        sig = str(row["sig"]).strip()
        print(f"Processing sample {idx}/{len(df)}...")

        result: ParsedDirective = await parser.parse(sig)
        expected_unit = str(row["expected_unit"]).strip()
        expected_per_day = float(row["expected_per_day"])

        per_day = result.per_day if result.per_day is not None else float("nan")
        correct = (
            result.parsed
            and result.dose_unit == expected_unit
            and abs(per_day - expected_per_day) <= PER_DAY_TOLERANCE
        )
        rows.append((sig, result.method.value, expected_unit, result.dose_unit or "", expected_per_day, per_day, correct))

    report = pd.DataFrame(
        rows,
        columns=["sig", "method", "expected_unit", "unit", "expected_per_day", "per_day", "correct"],
    )

    total = len(report)
    print(f"Total samples: {total}")
    if not total:
        return report

    for method, group in report.groupby("method"):
        accuracy = group["correct"].mean()
        print(f"Method {method}: {len(group)} samples ({len(group) / total:.3f}), accuracy {accuracy:.3f}")
    print(f"Overall accuracy: {report['correct'].mean():.3f}")

    print("\nExamples of mismatches (up to 10):")
    for _, row in report[~report["correct"]].head(10).iterrows():
        print("-" * 80)
        print(f"SIG: {row['sig']}")
        print(f"Method: {row['method']}")
        print(f"EXPECTED: {row['expected_per_day']} {row['expected_unit']} | GOT: {row['per_day']} {row['unit']}")

    return report


def main() -> int:
    logging.basicConfig(level=logging.INFO)
    arg_parser = argparse.ArgumentParser(description="Evaluate the SIG parser on a CSV test set")
    arg_parser.add_argument("--path", default=TESTSET_PATH)
    arg_parser.add_argument("--use-fallback", action="store_true", help="call the language-model fallback")
    args = arg_parser.parse_args()

    asyncio.run(evaluate_directive_parser(args.path, use_fallback=args.use_fallback))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
