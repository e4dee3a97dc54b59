#!/usr/bin/env python3
"""
Test runner for the IEC 104 breaker outstation.

Runs each test module under pytest in its own process and prints a summary.
"""

import subprocess
import sys
from pathlib import Path

# Test modules and their descriptions
TESTS = [
    ("protocols/iec104/test_iec104.py", "IEC 104 Protocol (APDU/ASDU/Connection State)"),
    ("test_registry.py", "Breaker Registry, Sessions and Snapshots"),
    ("test_arbitration.py", "Command Arbitration (Interrogation/SBO/Rejections)"),
    ("test_console.py", "Operator Console (show/toggle/set)"),
    ("test_master_actions.py", "Master Console Actions and CLI"),
    ("test_outstation_main.py", "Outstation CLI and Configuration"),
    ("test_api.py", "Status API (FastAPI)"),
    ("test_outstation_integration.py", "Master <-> Outstation over TCP loopback"),
]

TIMEOUT_S = 60


def run_test(module_path: str, description: str) -> tuple:
    """Run a single test module and capture results."""
    print(f"\n{'='*70}")
    print(f"Testing: {description}")
    print(f"Module: {module_path}")
    print(f"{'='*70}\n")

    try:
        result = subprocess.run(
            [sys.executable, "-m", "pytest", "-q", module_path],
            capture_output=True,
            text=True,
            timeout=TIMEOUT_S,
            cwd=Path(__file__).parent
        )

        if result.returncode == 0:
            print(result.stdout)
            if result.stderr:
                print("STDERR:", result.stderr)
            print(f"\n✅ PASSED: {description}")
            return (True, description, "")
        else:
            print(f"⚠️ FAILED: Return code {result.returncode}")
            print("STDOUT:", result.stdout)
            print("STDERR:", result.stderr)
            return (False, description, f"Exit code {result.returncode}")

    except subprocess.TimeoutExpired:
        print(f"⚠️ TIMEOUT: Test exceeded {TIMEOUT_S} seconds")
        return (False, description, "Timeout")
    except OSError as e:
        print(f"❌ ERROR: {str(e)}")
        return (False, description, str(e))


def main():
    """Run all tests and summarize results."""
    print("""
╔══════════════════════════════════════════════════════════════════════╗
║                IEC 104 Breaker Outstation - Module Tests             ║
╚══════════════════════════════════════════════════════════════════════╝
    """)

    results = []

    for module_path, description in TESTS:
        success, desc, error = run_test(module_path, description)
        results.append((success, desc, error))

    # Summary
    print(f"\n\n{'='*70}")
    print("TEST SUMMARY")
    print(f"{'='*70}\n")

    passed = sum(1 for r in results if r[0])
    failed = len(results) - passed

    for success, desc, error in results:
        status = "✅ PASS" if success else f"❌ FAIL: {error}"
        print(f"{status:25s} | {desc}")

    print(f"\n{'='*70}")
    print(f"Total: {len(results)} modules | Passed: {passed} | Failed: {failed}")
    print(f"{'='*70}\n")

    if failed > 0:
        print("⚠️  Some tests failed. Check output above for details.")
        return 1
    else:
        print("✅ All tests passed!")
        return 0


if __name__ == "__main__":
    sys.exit(main())
