#!/usr/bin/env python3
import argparse
import json
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

REPORT_MARKER = "dispatch_report="


def _iter_lines(paths: List[str]) -> Iterable[str]:
    if not paths:
        for line in sys.stdin:
            yield line.rstrip("\n")
        return
    for path in paths:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                yield line.rstrip("\n")


def parse_payload(line: str) -> Optional[Dict[str, Any]]:
    _, marker, raw = line.partition(REPORT_MARKER)
    if not marker:
        return None
    try:
        value = json.loads(raw.strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(value, dict):
        return None
    return value


def _safe_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def build_report(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    provider_counts: Counter[str] = Counter()
    eligible_sum = 0
    queued_sum = 0
    duplicate_sum = 0
    unmatched = 0
    request_ids = set()

    for row in rows:
        request_ids.add(str(row.get("request_id", "")))
        eligible = _safe_int(row.get("eligible", 0))
        eligible_sum += eligible
        queued_sum += _safe_int(row.get("queued", 0))
        duplicate_sum += _safe_int(row.get("skipped_duplicates", 0))
        if eligible == 0:
            unmatched += 1
        for provider_id in row.get("ranked_provider_ids", []) or []:
            provider_counts[str(provider_id)] += 1

    total = len(rows)
    return {
        "dispatches": total,
        "distinct_requests": len(request_ids),
        "avg_eligible": round(eligible_sum / total, 4) if total else 0.0,
        "queued": queued_sum,
        "skipped_duplicates": duplicate_sum,
        "unmatched_rate": round(unmatched / total, 4) if total else 0.0,
        "top_providers": dict(provider_counts.most_common(10)),
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Dispatches: {report['dispatches']} ({report['distinct_requests']} requests)")
    print(f"Average eligible providers: {report['avg_eligible']:.2f}")
    print(f"Queued notifications: {report['queued']} (duplicates skipped: {report['skipped_duplicates']})")
    print(f"Unmatched rate: {report['unmatched_rate']:.2%}")
    print("Most-notified providers:")
    for provider_id, count in report["top_providers"].items():
        print(f"  - {provider_id}: {count}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize marketplace dispatch_report logs.")
    parser.add_argument("log_files", nargs="*", help="Log files to parse. If omitted, read stdin.")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    rows = [payload for payload in (parse_payload(line) for line in _iter_lines(args.log_files)) if payload]
    report = build_report(rows)
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
