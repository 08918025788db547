"""Load a question bank JSON file into the trainer database and report coverage."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Optional, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from item_bank import ItemValidationError, QuestionBank

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--questions",
        type=str,
        default="questions.json",
        help="Path to the question bank JSON file (default: questions.json)",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail on the first malformed question instead of skipping it",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and report without writing to the database",
    )
    parser.add_argument(
        "--min-questions",
        type=int,
        default=10,
        help="Flag subjects with fewer servable questions than a full round (default: 10)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON coverage report",
    )
    return parser


def _build_report(bank: QuestionBank, min_questions: int) -> Dict:
    coverage = bank.coverage()
    sparse = sorted(subject for subject, entry in coverage.items() if entry["servable"] < min_questions)
    return {
        "source": str(bank.path),
        "loaded": len(bank.questions),
        "rejected": bank.rejected,
        "subjects": coverage,
        "sparse_subjects": sparse,
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if not args.dry_run:
        db.init()
    try:
        bank = QuestionBank(args.questions, auto_sync=not args.dry_run, strict=args.strict)
    except FileNotFoundError as exc:
        logger.error("%s", exc)
        return 2
    except (ItemValidationError, json.JSONDecodeError) as exc:
        logger.error("Question bank rejected: %s", exc)
        return 1

    report = _build_report(bank, args.min_questions)
    text = json.dumps(report, ensure_ascii=False, indent=2)
    if args.output:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
    print(text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
