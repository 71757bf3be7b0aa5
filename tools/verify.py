#!/usr/bin/env python3
"""
Offline verifier for Adnet batch summaries.

A batch summary is the JSON document settlement uploads for one
campaign's slice of a drained segment. Anyone holding it can check it
without the agent: every event hash is recomputed from the event's own
fields, chain linkage is followed where events are adjacent, and the
published counts are recounted.

Usage:
    python -m tools.verify summary.json
    python -m tools.verify summary.json --verbose
    python -m tools.verify summary.json --json

Exit status:
    0  VERIFIED        everything checks out
    1  TAMPERED        a hash, link or count does not match
    2  INCOMPLETE      chain fields are missing
    3  INVALID_FORMAT  not a batch summary
"""

import argparse
import hashlib
import json
import sys
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable


class VerificationResult(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INCOMPLETE = "INCOMPLETE"
    INVALID_FORMAT = "INVALID_FORMAT"


EXIT_CODES = {result: code for code, result in enumerate(VerificationResult)}


@dataclass
class VerificationReport:
    result: VerificationResult
    campaign_id: str
    segment_id: str
    event_count: int
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["result"] = self.result.value
        return data


# ============================================================
# Event hashing
#
# Kept in step with adnet/core/hasher.py by hand, so this file runs
# with nothing but the standard library.
# ============================================================

CANON_VERSION = 1
SUMMARY_TYPE = "adnet-event-batch"
SUMMARY_VERSION = "1.0.0"

HASHED_FIELDS = (
    "campaign_id",
    "promotion_id",
    "type",
    "actor_address",
    "verified",
    "trust_score",
    "timestamp",
)


def _canon(value: Any) -> Any:
    if isinstance(value, float):
        raise ValueError(f"float {value!r} has no canonical form")
    if isinstance(value, dict):
        return {k: _canon(v) for k, v in sorted(value.items()) if v is not None}
    if isinstance(value, list):
        return [_canon(v) for v in value]
    return value


def canonical_json(data: dict[str, Any]) -> str:
    """Sorted keys, nulls dropped, compact, ASCII, version marker added."""
    if not isinstance(data, dict):
        raise ValueError("only objects can be canonicalized")
    return json.dumps(
        {"__canon_v": CANON_VERSION, **_canon(data)},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        allow_nan=False,
    )


def compute_event_hash(event: dict, previous_hash: str) -> str:
    fields = {name: event.get(name) for name in HASHED_FIELDS}
    fields["previous_hash"] = previous_hash.lower()
    return hashlib.sha256(canonical_json(fields).encode("utf-8")).hexdigest()


# ============================================================
# Verifier
# ============================================================

class SummaryVerifier:
    """
    Checks one summary in stages; the first stage that fails decides the
    result and later stages are skipped.

    A summary holds one campaign's events out of a segment, so its
    sequence indices can have gaps. Linkage is checked between
    neighbours that were adjacent in the segment, and against the
    segment's start and last hash when the slice includes either end.
    """

    def __init__(self, summary: dict, verbose: bool = False):
        self.summary = summary
        self.verbose = verbose
        self.passed: list[str] = []
        self.failed: list[str] = []
        self.warnings: list[str] = []
        self.details: dict[str, Any] = {}

    def _trace(self, message: str) -> None:
        if self.verbose:
            print(f"  .. {message}")

    def verify(self) -> VerificationReport:
        stages: list[tuple[Callable[[], bool], VerificationResult]] = [
            (self._structure, VerificationResult.INVALID_FORMAT),
            (self._chain_fields, VerificationResult.INCOMPLETE),
            (self._hashes, VerificationResult.TAMPERED),
            (self._linkage, VerificationResult.TAMPERED),
            (self._counts, VerificationResult.TAMPERED),
        ]
        for stage, failure in stages:
            if not stage():
                return self._report(failure)
        return self._report(VerificationResult.VERIFIED)

    # --- stages -----------------------------------------------------

    def _structure(self) -> bool:
        self._trace("structure")
        s = self.summary
        if not isinstance(s, dict) or s.get("type") != SUMMARY_TYPE:
            kind = s.get("type") if isinstance(s, dict) else type(s).__name__
            self.failed.append(f"Not a batch summary (type={kind!r})")
            return False

        missing = [k for k in ("campaign_id", "events", "summary", "chain") if k not in s]
        if missing:
            self.failed.append(f"Missing required keys: {missing}")
            return False
        if not isinstance(s["events"], list) or not s["events"]:
            self.failed.append("'events' must be a non-empty array")
            return False
        if not isinstance(s["chain"], dict) or not isinstance(s["summary"], dict):
            self.failed.append("'chain' and 'summary' must be objects")
            return False

        publisher = s.get("publisher") or {}
        self.details.update(
            version=s.get("version"),
            publisher=publisher.get("domain"),
            publisher_address=publisher.get("address"),
            flush_index=s["chain"].get("flush_index"),
            segment_length=s["chain"].get("length"),
            timestamp=s.get("timestamp"),
        )
        if s.get("version") != SUMMARY_VERSION:
            self.warnings.append(f"Summary version {s.get('version')}, verifier expects {SUMMARY_VERSION}")

        self.passed.append("Summary structure valid")
        return True

    def _chain_fields(self) -> bool:
        self._trace("chain fields")
        problems = []
        for i, event in enumerate(self.summary["events"]):
            absent = [
                k for k in ("hash", "previous_hash", "sequence_index", "type", "timestamp")
                if not isinstance(event, dict) or event.get(k) is None
            ]
            if absent:
                problems.append(f"Event {i}: missing {absent}")
        problems += [
            f"Chain is missing '{k}'"
            for k in ("start_hash", "last_hash", "length")
            if self.summary["chain"].get(k) is None
        ]
        self.failed += problems
        if not problems:
            self.passed.append("All chain fields present")
        return not problems

    def _hashes(self) -> bool:
        self._trace("event hashes")
        events = self.summary["events"]
        problems = []
        for i, event in enumerate(events):
            try:
                expected = compute_event_hash(event, event["previous_hash"])
            except (TypeError, ValueError, AttributeError) as e:
                problems.append(f"Event {i}: cannot hash ({e})")
                continue
            if expected != event["hash"].lower():
                problems.append(
                    f"Event {i}: Hash mismatch (recomputed {expected[:16]}..., "
                    f"stored {event['hash'][:16]}...)"
                )
            else:
                self._trace(f"event {i} ok")
        self.failed += problems
        if not problems:
            self.passed.append(f"All {len(events)} event hashes verified")
        return not problems

    def _linkage(self) -> bool:
        self._trace("linkage")
        events = self.summary["events"]
        chain = self.summary["chain"]
        problems = []

        for i, (before, after) in enumerate(zip(events, events[1:]), start=1):
            gap = after["sequence_index"] - before["sequence_index"]
            if gap <= 0:
                problems.append(
                    f"Sequence goes backwards at event {i}: "
                    f"{before['sequence_index']} -> {after['sequence_index']}"
                )
            elif gap == 1 and after["previous_hash"].lower() != before["hash"].lower():
                problems.append(f"Event {i} does not link to event {i - 1}")

        first, last = events[0], events[-1]
        if first["sequence_index"] == 0 and first["previous_hash"].lower() != chain["start_hash"].lower():
            problems.append("First event does not link to the segment start hash")
        if last["sequence_index"] >= chain["length"]:
            problems.append(f"Event index {last['sequence_index']} is past the segment length {chain['length']}")
        elif last["sequence_index"] == chain["length"] - 1 and last["hash"].lower() != chain["last_hash"].lower():
            problems.append("Last event does not match the segment's last hash")

        if len(events) < chain["length"]:
            self.warnings.append(
                f"Partition holds {len(events)} of {chain['length']} segment events; "
                "linkage checked between adjacent events only"
            )

        self.failed += problems
        if not problems:
            self.passed.append("Chain linkage verified")
        return not problems

    def _counts(self) -> bool:
        self._trace("counts")
        events = self.summary["events"]
        published = self.summary["summary"]
        campaign_id = self.summary["campaign_id"]
        problems = []

        strays = [i for i, e in enumerate(events) if e.get("campaign_id") != campaign_id]
        if strays:
            problems.append(f"Events {strays} belong to another campaign")

        recount = {
            "views": sum(e["type"] == "view" for e in events),
            "clicks": sum(e["type"] == "click" for e in events),
            "total": len(events),
            "excluded_unverified": sum(not e.get("verified") for e in events),
        }
        for key, actual in recount.items():
            if published.get(key) != actual:
                problems.append(f"Summary '{key}' is {published.get(key)}, events give {actual}")

        viewers = {
            e["actor_address"].lower()
            for e in events
            if e["type"] == "view" and e.get("verified") and e.get("actor_address")
        }
        reach = published.get("reach")
        if not isinstance(reach, int) or reach > len(viewers):
            problems.append(f"Reach {reach} exceeds {len(viewers)} distinct verified viewers")

        self.failed += problems
        if not problems:
            self.passed.append("Summary counts match events")
        return not problems

    def _report(self, result: VerificationResult) -> VerificationReport:
        s = self.summary if isinstance(self.summary, dict) else {}
        chain = s.get("chain") if isinstance(s.get("chain"), dict) else {}
        events = s.get("events") if isinstance(s.get("events"), list) else []
        return VerificationReport(
            result=result,
            campaign_id=str(s.get("campaign_id", "unknown")),
            segment_id=str(chain.get("segment_id", "unknown")),
            event_count=len(events),
            checks_passed=self.passed,
            checks_failed=self.failed,
            warnings=self.warnings,
            details=self.details,
        )


# ============================================================
# CLI
# ============================================================

_HEADLINES = {
    VerificationResult.VERIFIED: "VERIFIED: all checks passed",
    VerificationResult.TAMPERED: "TAMPERED: hash, linkage or count mismatch",
    VerificationResult.INCOMPLETE: "INCOMPLETE: chain data missing",
    VerificationResult.INVALID_FORMAT: "INVALID_FORMAT: not a batch summary",
}


def print_report(report: VerificationReport, json_output: bool = False) -> None:
    if json_output:
        print(json.dumps(report.to_dict(), indent=2))
        return

    rule = "-" * 60
    print(rule)
    print(f"  {_HEADLINES[report.result]}")
    print(rule)
    print(f"  campaign {report.campaign_id}  segment {report.segment_id}  events {report.event_count}")

    for title, marker, lines in (
        ("ok", "+", report.checks_passed),
        ("failed", "x", report.checks_failed),
        ("warnings", "!", report.warnings),
    ):
        if lines:
            print(f"\n  {title}:")
            for line in lines:
                print(f"    {marker} {line}")
    print()


class SummaryLoadError(Exception):
    pass


def _load(path: Path) -> dict:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise SummaryLoadError(f"no such file: {path}")
    except json.JSONDecodeError as e:
        raise SummaryLoadError(f"{path} is not JSON: {e}")
    except OSError as e:
        raise SummaryLoadError(f"cannot read {path}: {e}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Verify an Adnet batch summary offline",
        epilog="Exit status: 0 VERIFIED, 1 TAMPERED, 2 INCOMPLETE, 3 INVALID_FORMAT",
    )
    parser.add_argument("summary", type=Path, help="Summary JSON file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Trace each stage")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()

    try:
        summary = _load(args.summary)
    except SummaryLoadError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(EXIT_CODES[VerificationResult.INVALID_FORMAT])

    report = SummaryVerifier(summary, verbose=args.verbose).verify()
    print_report(report, json_output=args.json)
    sys.exit(EXIT_CODES[report.result])


if __name__ == "__main__":
    main()
