#!/usr/bin/env python3
"""
Hairstyle Lab command line.

Commands:
- serve:    run the HTTP API (uvicorn)
- generate: run one multi-strategy session for a user photo + reference
- select:   record the user's pick for a session and run the evolution check
- evolve:   run an evolution check now
- status:   show evolution status
- stats:    show per-strategy scores and success rates
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Sequence

from hairstyle_lab.config import EngineConfig, load_config
from hairstyle_lab.engine import GenerationRequest, InvalidRequestError
from hairstyle_lab.engine_factory import create_engine_container
from hairstyle_lab.image.fetch import ReferenceFetchError
from hairstyle_lab.image.payload import encode_data_url, sniff_mime_type

def _image_arg(value: str) -> str:
    """Local files become data URLs; URLs and data URLs pass through."""

    if value.startswith(("http://", "https://", "data:")):
        return value
    path = Path(value)
    if not path.is_file():
        raise argparse.ArgumentTypeError(f"image not found: {value}")
    data = path.read_bytes()
    try:
        mime = sniff_mime_type(data)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{value}: {exc}") from exc
    return encode_data_url(data, mime)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Multi-strategy hairstyle generation with strategy evolution")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML/JSON configuration file")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--reload", action="store_true")

    gen = sub.add_parser("generate", help="Generate variations for one session")
    gen.add_argument("--user", required=True, type=_image_arg, help="User photo (path, URL or data URL)")
    gen.add_argument("--reference", required=True, type=_image_arg, help="Reference photo (path, URL or data URL)")
    gen.add_argument("--session", default=None, help="Session id (generated when omitted)")
    gen.add_argument("--strategy-id", action="append", default=[], help="Use these strategy ids (repeatable)")
    gen.add_argument("--dynamic", action="store_true", help="Create session-specific dynamic strategies")
    gen.add_argument("--description", default=None, help="Reference description for dynamic strategies")
    gen.add_argument("--max", type=int, default=None, help="Maximum number of variations")
    gen.add_argument("--single", action="store_true", help="Run only the top strategy, with retries")
    gen.add_argument("--outdir", default=None, help="Directory for generated images")

    select = sub.add_parser("select", help="Record the winning attempt of a session")
    select.add_argument("--session", required=True)
    select.add_argument("--attempt", required=True)
    select.add_argument("--no-evolve", action="store_true", help="Skip the evolution check")

    sub.add_parser("evolve", help="Run an evolution check")
    sub.add_parser("status", help="Show evolution status")
    sub.add_parser("stats", help="Show strategy statistics")
    return parser


def _render_stats(stats: dict[str, Any]) -> None:
    print(f"Strategies ({stats['activeStrategies']}/{stats['totalStrategies']} active)")
    for row in stats["strategies"]:
        marker = "*" if row["isActive"] else " "
        print(
            f" {marker} {row['name']:<28} {row['origin']:<8} score={row['score']:.3f} "
            f"won={row['winCount']}/{row['usageCount']} ({row['successRate']})"
        )
    if stats.get("message"):
        print(f"[hairstyle-lab] {stats['message']}", file=sys.stderr)


def run_command(args: argparse.Namespace, config: EngineConfig) -> int:
    if args.command == "serve":
        import uvicorn

        from hairstyle_lab.api.app import create_app

        uvicorn.run(
            create_app(config=config),
            host=args.host or config.server.host,
            port=args.port or config.server.port,
        )
        return 0

    outdir = Path(args.outdir) if getattr(args, "outdir", None) else None
    container = create_engine_container(config, output_dir=outdir)
    engine = container.engine
    try:
        if args.command == "generate":
            request = GenerationRequest(
                user_image=args.user,
                reference_image=args.reference,
                session_id=args.session,
                strategy_ids=args.strategy_id or None,
                use_dynamic_strategies=args.dynamic,
                reference_description=args.description,
                max_variations=args.max,
            )
            if args.single:
                try:
                    session_id, variation = asyncio.run(engine.generate_single(request))
                except (InvalidRequestError, ReferenceFetchError) as exc:
                    print(f"[hairstyle-lab] error: {exc}", file=sys.stderr)
                    return 2
                _print_json({"sessionId": session_id, "variation": variation.as_dict(include_image=False)})
                return 0 if variation.ok else 1
            try:
                batch = asyncio.run(engine.generate_batch(request))
            except (InvalidRequestError, ReferenceFetchError) as exc:
                print(f"[hairstyle-lab] error: {exc}", file=sys.stderr)
                return 2
            _print_json(batch.as_dict(include_image=False))
            return 1 if batch.all_failed else 0

        if args.command == "select":
            try:
                ok = asyncio.run(engine.record_selection(args.attempt, args.session))
            except InvalidRequestError as exc:
                print(f"[hairstyle-lab] error: {exc}", file=sys.stderr)
                return 2
            payload: dict[str, Any] = {"success": ok}
            if ok and not args.no_evolve:
                payload["evolution"] = asyncio.run(engine.evolve_safely()).as_dict()
            _print_json(payload)
            return 0 if ok else 1

        if args.command == "evolve":
            _print_json(asyncio.run(engine.evolve_safely()).as_dict())
            return 0

        if args.command == "status":
            _print_json(engine.evolution_status())
            return 0

        if args.command == "stats":
            _render_stats(engine.strategy_stats())
            return 0
    finally:
        container.close()
    return 2


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(Path(args.config))
    return run_command(args, config)


if __name__ == "__main__":
    sys.exit(main())
