"""Validate a question bundle and summarise its coverage by subject, type and difficulty."""
from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from engines.validation import ContentValidationError
from item_bank import QuestionBank, load_bundle_file
from schemas import AppData


def compute_coverage(data: AppData) -> Dict[str, Any]:
    by_subject: Dict[str, Dict[str, Any]] = {}
    for question in data.questions:
        stats = by_subject.setdefault(
            question.subject,
            {"questions": 0, "types": Counter(), "difficulties": Counter(), "topics": Counter()},
        )
        stats["questions"] += 1
        stats["types"][question.type] += 1
        stats["difficulties"][question.difficulty or "unrated"] += 1
        stats["topics"][question.topic] += 1

    referenced = {qid for qset in data.sets for qid in qset.question_ids}
    orphans = sorted(q.id for q in data.questions if q.id not in referenced)
    return {
        "total_questions": len(data.questions),
        "total_sets": len(data.sets),
        "subjects": {
            subject: {key: dict(value) if isinstance(value, Counter) else value for key, value in stats.items()}
            for subject, stats in sorted(by_subject.items())
        },
        "unreferenced_questions": orphans,
    }


def _load(args: argparse.Namespace) -> AppData:
    if args.directory:
        return QuestionBank.from_directory(args.directory, args.grade).to_app_data()
    return load_bundle_file(args.path)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Question bundle (.json, .yaml or .yml); legacy grade files are converted on load.",
    )
    parser.add_argument(
        "--directory",
        type=str,
        default=None,
        help="Validate a whole question data directory instead of a single file.",
    )
    parser.add_argument("--grade", type=int, default=1, help="Grade to load with --directory (default: 1)")
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON report instead of stdout.",
    )
    args = parser.parse_args(argv)
    if not args.path and not args.directory:
        parser.error("either a bundle path or --directory is required")
    return args


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    problems: List[str] = []
    report: Dict[str, Any]
    try:
        report = compute_coverage(_load(args))
    except FileNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except ContentValidationError as exc:
        problems = exc.problems or [str(exc)]
        report = {"error": str(exc)}
    report["problems"] = problems
    payload = json.dumps(report, indent=2, ensure_ascii=False)

    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)
    return 1 if problems else 0


if __name__ == "__main__":
    raise SystemExit(main())
