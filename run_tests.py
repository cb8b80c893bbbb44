#!/usr/bin/env python3
"""
CEIBA — Single-Command Test Runner
==================================
Run:  python run_tests.py
      python run_tests.py --html       (with HTML report)
      python run_tests.py --quick      (skip the HTTP API tests)
      python run_tests.py -k resend    (extra arguments go to pytest)
"""

import datetime
import os
import subprocess
import sys

ROOT_DIR = os.path.dirname(os.path.abspath(__file__))
ARTIFACTS_DIR = os.path.join(ROOT_DIR, "test_artifacts")


def main():
    args = sys.argv[1:]
    quick = "--quick" in args
    html = "--html" in args
    passthrough = [a for a in args if a not in ("--quick", "--html")]

    cmd = [sys.executable, "-m", "pytest", "tests", "-v", "--tb=short"]
    if quick:
        cmd.extend(["--ignore", "tests/test_api.py"])

    if html:
        ts = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        report_dir = os.path.join(ARTIFACTS_DIR, ts)
        os.makedirs(report_dir, exist_ok=True)
        report_path = os.path.join(report_dir, "test_report.html")
        cmd.extend([f"--html={report_path}", "--self-contained-html"])

    cmd.extend(passthrough)

    print("=" * 70)
    print("  CEIBA — Reporting Test Suite")
    print(f"  {datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)
    print(f"  Command: {' '.join(cmd)}")
    print("=" * 70)

    result = subprocess.run(cmd, cwd=ROOT_DIR)

    print("=" * 70)
    print("  ALL TESTS PASSED" if result.returncode == 0 else f"  TESTS FAILED (exit code {result.returncode})")
    print("=" * 70)
    return result.returncode


if __name__ == "__main__":
    sys.exit(main())
