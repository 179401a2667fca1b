"""Consume fixtures and validate them against the escrow engine."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT / "src"))

from trust_escrow.fees import calculate_fees  # noqa: E402
from trust_escrow.scenario import run_scenario  # noqa: E402


def _check_fee_vectors(path: Path) -> list[str]:
    failures: list[str] = []
    data = json.loads(path.read_text())
    for vec in data.get("test_vectors", []):
        fees = calculate_fees(vec["input"]["amount"])
        actual = {
            "escrow_fee": fees.escrow_fee,
            "platform_fee": fees.platform_fee,
            "total_fee": fees.total_fee,
        }
        if actual != vec["expected"]:
            failures.append(f"{vec['name']}: fee_mismatch")
    return failures


def _check_scenario_vectors(path: Path) -> list[str]:
    failures: list[str] = []
    data = json.loads(path.read_text())
    for vec in data.get("test_vectors", []):
        result = asyncio.run(run_scenario(vec["scenario"]))
        expected = vec["expected"]
        if result.passed != expected["passed"]:
            failures.append(f"{vec['name']}: outcome_mismatch")
            continue
        for name, digest in expected["digests"].items():
            if result.digests.get(name) != digest:
                failures.append(f"{vec['name']}/{name}: digest_mismatch")
    return failures


def main() -> None:
    fixtures = ROOT / "fixtures"

    failures: list[str] = []

    fees = fixtures / "fees" / "calculate.json"
    if fees.exists():
        failures.extend(_check_fee_vectors(fees))

    scenarios = fixtures / "scenarios" / "lifecycle.json"
    if scenarios.exists():
        failures.extend(_check_scenario_vectors(scenarios))

    if failures:
        for f in failures:
            print("FAIL", f)
        raise SystemExit(1)

    print("All fixtures passed")


if __name__ == "__main__":
    main()
