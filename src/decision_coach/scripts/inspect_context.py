"""CLI helper to inspect the context pack assembled for a turn request."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from ..ai.context.assembler import AssemblerConfig, ContextAssembler, ContextPack
from ..ai.orchestration.errors import RequestValidationError
from ..ai.orchestration.pipeline import classify_turn, enrich_turn
from ..ai.orchestration.request import parse_turn_request
from ..utils.logging import setup_logging


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Render the context zones, hashes and budget for a turn request.")
    parser.add_argument(
        "request",
        nargs="?",
        type=Path,
        help="JSON file containing the turn request. Reads stdin when omitted.",
    )
    parser.add_argument("--prompt-version", default="v1", help="Prompt version embedded in Zone 1.")
    parser.add_argument("--model", default="gpt-4o-mini", help="Model identifier recorded in the pack.")
    parser.add_argument("--json", action="store_true", help="Emit the pack as JSON instead of text.")
    parser.add_argument("--no-zones", action="store_true", help="Skip the rendered zone text.")
    parser.add_argument("--verbose", action="store_true", help="Log pipeline debug output to stderr.")
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.WARNING, file_output=False, force=True)

    try:
        payload = _load_payload(args.request)
    except (OSError, json.JSONDecodeError) as exc:
        print(f"Could not read request: {exc}", file=sys.stderr)
        return 1

    try:
        request = parse_turn_request(payload)
    except RequestValidationError as exc:
        print(f"Invalid request: {exc.message}", file=sys.stderr)
        return 2

    classification = classify_turn(request)
    assembler = ContextAssembler(AssemblerConfig(model_id=args.model))
    enriched = enrich_turn(request, classification, assembler, prompt_version=args.prompt_version)
    pack = enriched.pack

    if args.json:
        report = pack.to_dict(include_text=not args.no_zones)
        report["turn_kind"] = classification.kind
        report["intent"] = classification.intent
        json.dump(report, sys.stdout, indent=2, sort_keys=True)
        sys.stdout.write("\n")
        return 0

    _print_report(pack, kind=classification.kind, intent=classification.intent, show_zones=not args.no_zones)
    return 0


def _load_payload(path: Path | None) -> Any:
    if path is not None:
        return json.loads(path.read_text(encoding="utf-8"))
    return json.loads(sys.stdin.read())


def _print_report(pack: ContextPack, *, kind: str, intent: str, show_zones: bool) -> None:
    print(f"turn kind: {kind}")
    print(f"intent: {intent}")
    print(f"route: {pack.route}")
    print(f"stage: {pack.stage}")
    print(f"outcome: {pack.outcome}")
    print()
    print("hashes:")
    for name, value in pack.hashes().items():
        print(f"  {name}: {value or '-'}")
    if pack.cache_boundary is not None:
        boundary = pack.cache_boundary.to_dict()
        print(f"  cache_prefix_key: {boundary.get('cache_prefix_key')}")
        print(f"  dynamic_suffix_key: {boundary.get('dynamic_suffix_key')}")
    print()
    print("budget:")
    for name, value in pack.budget.to_dict().items():
        print(f"  {name}: {value}")
    print(f"  estimated_tokens: {pack.estimated_tokens}")
    print(f"  within_budget: {pack.within_budget}")
    print(f"  overage_tokens: {pack.overage_tokens}")
    if pack.truncation_steps:
        print(f"  truncation_steps: {', '.join(pack.truncation_steps)}")
    if not show_zones:
        return
    for label, text in (("zone 1", pack.zone1), ("zone 2", pack.zone2), ("zone 3", pack.zone3)):
        print()
        print(f"----- {label} -----")
        print(text)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
