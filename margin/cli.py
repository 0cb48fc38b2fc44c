"""margin: operator CLI for the nudge pipeline.

    margin evaluate --user u1 --paragraph "..."   # full response + trace as JSON
    margin evaluate --user u1 --request req.json
    margin feedback --user u1 nudge_abc down --reason too_vague
    margin presets
    margin init-db
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .config import PRESETS, load_config
from .errors import MarginError
from .llm import GeminiJudgmentOracle
from .memory import MemoryStore
from .personalization import record_feedback
from .pipeline import MarginPipeline, MarginRequest
from .spark import DOWNVOTE_REASONS, FEEDBACK_DOWN, FEEDBACK_UP

logger = logging.getLogger("margin.cli")


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise FileNotFoundError(f"Missing file: {path}") from None
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {path}: {exc}") from None


def _build_payload(args: argparse.Namespace) -> dict:
    if args.request:
        payload = _read_json(Path(args.request))
        if not isinstance(payload, dict):
            raise ValueError(f"{args.request}: expected a JSON object")
    else:
        payload = {"paragraph": args.paragraph, "fullEntry": args.entry or args.paragraph}
    if args.date:
        payload["entryDate"] = args.date
    if args.preset:
        payload["tuning"] = args.preset
    return payload


async def _open_store(config) -> MemoryStore:
    store = MemoryStore(config.database_url, config.google_api_key, config.retry)
    await store.connect()
    return store


async def _evaluate(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    request = MarginRequest.from_dict(_build_payload(args), default_tuning=config.tuning)
    store = await _open_store(config)
    try:
        oracle = GeminiJudgmentOracle(config.google_api_key, config.oracle, config.retry)
        pipeline = MarginPipeline(store, oracle, config.rollout, config.oracle)
        response = await pipeline.evaluate(args.user, request)
    finally:
        await store.close()
    print(json.dumps(response.to_dict(), indent=2, default=str))
    return 0


async def _feedback(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    store = await _open_store(config)
    try:
        await record_feedback(store, args.user, args.nudge_id, args.feedback, args.reason)
    finally:
        await store.close()
    print(f"Recorded {args.feedback} on {args.nudge_id}")
    return 0


async def _init_db(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    store = await _open_store(config)
    try:
        await store.init_schema()
    finally:
        await store.close()
    return 0


def cmd_evaluate(args: argparse.Namespace) -> int:
    if not args.paragraph and not args.request:
        print("evaluate: one of --paragraph or --request is required", file=sys.stderr)
        return 2
    return asyncio.run(_evaluate(args))


def cmd_feedback(args: argparse.Namespace) -> int:
    return asyncio.run(_feedback(args))


def cmd_presets(_: argparse.Namespace) -> int:
    print(json.dumps({name: t.to_dict() for name, t in PRESETS.items()}, indent=2))
    return 0


def cmd_init_db(args: argparse.Namespace) -> int:
    return asyncio.run(_init_db(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="margin",
        description="Margin: evidence-backed journal nudges from a personal memory graph.",
    )
    parser.add_argument("--config", default=None, help="Path to runtime.yaml")
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    evaluate = sub.add_parser("evaluate", help="Run the pipeline for one paragraph.")
    evaluate.add_argument("--user", required=True, help="User ID")
    evaluate.add_argument("--paragraph", help="Paragraph just written")
    evaluate.add_argument("--entry", help="Full entry text (defaults to the paragraph)")
    evaluate.add_argument("--request", help="JSON request body file")
    evaluate.add_argument("--date", help="Entry date (YYYY-MM-DD)")
    evaluate.add_argument("--preset", choices=sorted(PRESETS), help="Tuning preset")
    evaluate.set_defaults(func=cmd_evaluate)

    feedback = sub.add_parser("feedback", help="Record thumbs up/down on a nudge.")
    feedback.add_argument("--user", required=True, help="User ID")
    feedback.add_argument("nudge_id")
    feedback.add_argument("feedback", choices=[FEEDBACK_UP, FEEDBACK_DOWN])
    feedback.add_argument("--reason", choices=DOWNVOTE_REASONS)
    feedback.set_defaults(func=cmd_feedback)

    presets = sub.add_parser("presets", help="Print tuning presets.")
    presets.set_defaults(func=cmd_presets)

    init_db = sub.add_parser("init-db", help="Apply schema.sql.")
    init_db.set_defaults(func=cmd_init_db)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    try:
        return int(args.func(args))
    except (MarginError, ValueError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
