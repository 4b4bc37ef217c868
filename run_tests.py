#!/usr/bin/env python3
"""
Test runner script for testpartner.

Suites are selected by the markers registered in tests/conftest.py:

    python run_tests.py              # unit, then integration
    python run_tests.py unit         # tests marked ``unit``
    python run_tests.py integration  # cross-context tests marked ``integration``
    python run_tests.py quick        # everything not marked ``slow``
    python run_tests.py coverage     # full run with coverage (needs the test extra)
"""

import subprocess
import sys

SUITES = {
    "unit": ("Unit Tests", ["-m", "unit"]),
    "integration": ("Integration Tests", ["-m", "integration"]),
    "quick": ("Quick Tests", ["-m", "not slow"]),
    "coverage": ("Coverage", ["--cov=testpartner", "--cov-report=term-missing"]),
}


def run_suite(name, extra_args=()):
    """Run one suite through pytest and report whether it passed."""
    description, marker_args = SUITES[name]
    cmd = [sys.executable, "-m", "pytest", "tests/", "--tb=short", *marker_args, *extra_args]

    print(f"\n{'='*60}")
    print(f"Running: {description}")
    print(f"Command: {' '.join(cmd)}")
    print('='*60)

    try:
        result = subprocess.run(cmd, check=False)
    except OSError as e:
        print(f"Error running command: {e}")
        return False
    return result.returncode == 0


def main():
    requested = sys.argv[1] if len(sys.argv) > 1 else "all"
    extra_args = sys.argv[2:]

    if requested == "all":
        names = ["unit", "integration"]
    elif requested in SUITES:
        names = [requested]
    else:
        print(f"Unknown suite '{requested}'. Choose from: all, {', '.join(SUITES)}")
        return 2

    results = {name: run_suite(name, extra_args) for name in names}

    print(f"\n{'='*60}")
    for name, passed in results.items():
        print(f"{SUITES[name][0]}: {'passed' if passed else 'FAILED'}")
    print('='*60)

    return 0 if all(results.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
