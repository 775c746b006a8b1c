"""Command-line runner for the ANC PrEP decision engine.

Reads a saved assessment (JSON) or a pasted "Label: value" block, derives the
snapshot and prints either the quick-reference text or the JSON contract.
"""

import argparse
import json
import logging
import sys

from answer_ingest.parser import parse_answer_block, rehydrate
from prep_advisory import evaluate_advisory_transition
from prep_config import config, setup_logging
from prep_engine import SCORE_CAP, VERSION, derive_snapshot, render_quick_text
from prep_output_adapter import build_final_assessment_record, snapshot_to_dict

logger = logging.getLogger(__name__)


def load_input(path: str) -> dict:
    """Read answers from a file (or stdin for "-").

    JSON objects are taken as saved records; anything else is parsed as a
    "Label: value" block. A saved final record is unwrapped to its answers.
    """
    if path == "-":
        text = sys.stdin.read()
    else:
        with open(path, encoding="utf-8") as fh:
            text = fh.read()

    stripped = text.lstrip()
    if stripped.startswith("{"):
        data = json.loads(stripped)
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        return data.get("answers", data)
    return parse_answer_block(text)


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Evaluate an antenatal PrEP screening assessment."
    )
    parser.add_argument(
        "input",
        help='Assessment file (JSON record or "Label: value" lines); "-" reads stdin',
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the snapshot as JSON instead of quick-reference text",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help="Print the final assessment record (answers + snapshot) as JSON",
    )
    parser.add_argument(
        "--assessed-by",
        default=config.ASSESSED_BY,
        help="Assessor name written into the final record (default: PREP_ASSESSED_BY)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)
    setup_logging(args.verbose, stream=sys.stderr)
    logger.debug("Engine %s", VERSION["engine"])

    try:
        data = load_input(args.input)
    except (OSError, ValueError) as e:
        print(f"error: cannot read assessment from {args.input}: {e}", file=sys.stderr)
        return 2

    assessment, warnings = rehydrate(data)
    snap = derive_snapshot(assessment)
    advisory = evaluate_advisory_transition(None, snap)
    for event in advisory.events:
        logger.debug("Advisory event %s", event)

    if args.save:
        record = build_final_assessment_record(assessment, snap, assessed_by=args.assessed_by)
        record["ingestWarnings"] = warnings
        print(json.dumps(record, indent=2, ensure_ascii=False))
    elif args.json:
        out = snapshot_to_dict(snap)
        out["advisory"] = advisory.to_dict()
        out["ingestWarnings"] = warnings
        print(json.dumps(out, indent=2, ensure_ascii=False))
    else:
        print(render_quick_text(assessment, snap))
        if advisory.risk_shown:
            print(f"\n[Risk advisory] {snap.level.value} risk ({snap.score}/{SCORE_CAP}): {snap.risk['followUpFrequency']}")
        if advisory.deferral_shown:
            print(f"\n[Deferral] {snap.eligibility.reason}")
        for w in warnings:
            print(f"warning: {w}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
