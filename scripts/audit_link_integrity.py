#!/usr/bin/env python3
"""Audit activity <-> deal link integrity in the salesrecon database.

Read-only. Reports dangling, asymmetric and retired links and exits
non-zero when any are found. Nothing is auto-corrected.

    PYTHONPATH=. python scripts/audit_link_integrity.py
    PYTHONPATH=. python scripts/audit_link_integrity.py --json
"""

import argparse
import json
import sys
from collections import Counter
from datetime import datetime, timezone

from salesrecon.database import SessionLocal
from salesrecon.logging_config import setup_logging
from salesrecon.services.analysis_service import find_integrity_violations


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Audit activity/deal link integrity")
    parser.add_argument("--json", action="store_true", help="print the full findings as JSON")
    args = parser.parse_args(argv)

    setup_logging()
    db = SessionLocal()
    try:
        findings = find_integrity_violations(db)
    finally:
        db.close()

    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total": len(findings),
        "by_type": dict(Counter(f["type"] for f in findings)),
    }
    if args.json:
        report["findings"] = findings
        print(json.dumps(report, indent=2))
    else:
        print(f"Link integrity audit @ {report['timestamp']}")
        for kind, count in sorted(report["by_type"].items()):
            print(f"  {kind:<18} {count}")
        print(f"  {'TOTAL':<18} {report['total']}")
    return 1 if findings else 0


if __name__ == "__main__":
    sys.exit(main())
