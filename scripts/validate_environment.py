#!/usr/bin/env python3
"""Validate local seva engine environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from importlib.metadata import version
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from seva_engine.repository.data_repository import DataRepository
from seva_engine.services.booking_service import BookingService, parse_draft
from seva_engine.services.report_service import FairnessReportService
from seva_engine.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="seva-env-")

    # CHECK 1: Python version >= 3.9 (zoneinfo)
    if sys.version_info >= (3, 9):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.9",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable with versions
    package_specs = [
        ("pydantic", "pydantic"),
        ("pandas", "pandas"),
        ("dateutil", "python-dateutil"),
        ("pytest", "pytest"),
    ]
    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            _ = version(dist_name)
        except Exception as exc:  # pragma: no cover - runtime guard
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "seva_validation.db",
        )
        repository = DataRepository(validation_settings)

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Reference data seeding
        try:
            repository.seed_reference_data()
            halls = len(repository.list_halls())
            staff = len(repository.list_staff())
            if halls != 3 or staff != 9:
                raise RuntimeError(f"expected 3 halls and 9 staff, got {halls} and {staff}")
            ok, line = _print_result("Reference data", True, f": {halls} halls, {staff} staff")
        except Exception as exc:
            ok, line = _print_result("Reference data", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Booking with allocation
        as_of = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        start = as_of + timedelta(days=7)
        try:
            draft = parse_draft(
                {
                    "title": "Validation kirtan",
                    "start": start.isoformat(),
                    "end": (start + timedelta(hours=1)).isoformat(),
                    "location_type": "ON_SITE",
                    "program_ids": ["kirtan"],
                    "attendees": 40,
                }
            )
            booking, allocation = BookingService(
                repository=repository,
                settings=validation_settings,
            ).create_booking(draft, as_of=as_of)
            created = len(allocation.created) if allocation is not None else 0
            if allocation is not None and (created != 3 or allocation.shortages):
                raise RuntimeError(f"expected 3 singers without shortage, got {created}")
            ok, line = _print_result(
                "Booking allocation",
                True,
                f": hall={booking.hall_id} assignments={created}",
            )
        except Exception as exc:
            ok, line = _print_result("Booking allocation", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6: Fairness report
        try:
            rows = FairnessReportService(
                repository=repository,
                settings=validation_settings,
            ).build_report(as_of)
            ok, line = _print_result("Fairness report", True, f": {len(rows)} rows")
        except Exception as exc:
            ok, line = _print_result("Fairness report", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Seva Engine Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
