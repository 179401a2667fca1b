"""Run the test suite and write fee and scenario fixtures to fixtures/."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
OUT = ROOT / "fixtures"

# Only these modules feed the fixture collector.
FIXTURE_TESTS = ("test_fees.py", "test_scenarios.py")


def main(argv: list[str]) -> int:
    env = dict(os.environ)
    env["PYTHONPATH"] = str(ROOT / "src")

    cmd = [
        sys.executable,
        "-m",
        "pytest",
        *(str(ROOT / "tests" / name) for name in FIXTURE_TESTS),
        "-q",
        "--output",
        str(OUT),
        *argv,
    ]
    print("Running:", " ".join(cmd))
    code = subprocess.call(cmd, env=env, cwd=str(ROOT))
    if code == 0:
        for path in sorted(OUT.rglob("*.json")):
            print("wrote", path.relative_to(ROOT))
    return code


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
