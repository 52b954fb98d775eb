"""
Loan Harness - Operator CLI

Run the end-to-end loan check from a shell and inspect stored results
without going through the HTTP gateway.

Usage:
    # One run, synchronously; exit code 0 on pass, 1 on fail
    python -m harness.cli run [--run-id my-run] [--simulate]

    # Show one stored result
    python -m harness.cli show <run_id>

    # List stored results, newest first
    python -m harness.cli list [--limit 20]

    # Start the HTTP gateway
    python -m harness.cli serve --port 8080
"""

import argparse
import json
import os
import sys
import uuid

from api.models import TriggerRequest
from engine.config import HarnessSettings, load_settings
from engine.logging import configure_logging
from harness.orchestrator import InvalidRunId, RunOrchestrator
from harness.store import ResultStore, StoreError


def cmd_run(args, settings: HarnessSettings, store: ResultStore) -> int:
    """Run one test synchronously."""
    if args.simulate:
        settings.simulate = True
    errors = TriggerRequest(run_id=args.run_id or None).validate()
    if errors:
        print(f"Error: {errors[0]}", file=sys.stderr)
        return 1
    run_id = args.run_id or str(uuid.uuid4())

    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  TEST RUN: {run_id}{'  (simulation)' if settings.simulate else ''}",
          file=sys.stderr)
    print(f"{'═' * 70}", file=sys.stderr, flush=True)

    try:
        result = RunOrchestrator(settings, store=store).run(run_id)
    except InvalidRunId as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"\n  success:     {result.success}", file=sys.stderr)
    print(f"  contract:    {result.contract_id or '-'}", file=sys.stderr)
    print(f"  repayment:   {result.collateral_repayment_txid or '-'}", file=sys.stderr)
    if result.error_message:
        print(f"  error:       {result.error_message}", file=sys.stderr)
    print(f"{'═' * 70}\n", file=sys.stderr)

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


def cmd_show(args, settings: HarnessSettings, store: ResultStore) -> int:
    result = store.get(args.run_id)
    if result is None:
        print(f"Test not found: {args.run_id}", file=sys.stderr)
        return 1
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0


def cmd_list(args, settings: HarnessSettings, store: ResultStore) -> int:
    results = store.list_all(limit=args.limit)
    if not results:
        print("No test results found.")
        return 0

    print(f"\nTest Results ({len(results)})")
    print(f"{'─' * 70}")
    for r in results:
        mark = "✓" if r.success else "✗"
        print(f"  {mark} {r.id:38s} {r.timestamp:%Y-%m-%d %H:%M:%S}  "
              f"{r.contract_id or '-'}")
        if r.error_message:
            print(f"      {r.error_message[:100]}")
    return 0


def cmd_serve(args, settings: HarnessSettings, store: ResultStore) -> int:
    import uvicorn

    # The app loads its own settings; hand the CLI's choices over.
    if args.config:
        os.environ["LH_CONFIG"] = args.config
    if args.db:
        os.environ["LH_STORAGE_DB_PATH"] = args.db
    uvicorn.run("api.server:app", host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Loan Harness - end-to-end loan verification",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="",
                        help="Base config YAML (default: $LH_CONFIG or harness_config.yaml)")
    parser.add_argument("--db", default="",
                        help="Result database path (overrides storage.db_path)")

    subs = parser.add_subparsers(dest="command", help="Command")

    run_p = subs.add_parser("run", help="Execute one test run")
    run_p.add_argument("--run-id", default="")
    run_p.add_argument("--simulate", action="store_true",
                       help="Substitute a synthetic status document when the CLI produces none")

    show_p = subs.add_parser("show", help="Show a stored result")
    show_p.add_argument("run_id")

    list_p = subs.add_parser("list", help="List stored results")
    list_p.add_argument("--limit", type=int, default=None)

    serve_p = subs.add_parser("serve", help="Start the HTTP gateway")
    serve_p.add_argument("--host", default=os.environ.get("BIND_HOST", "0.0.0.0"))
    serve_p.add_argument("--port", type=int, default=int(os.environ.get("BIND_PORT", "8080")))

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    settings = load_settings(base_path=args.config)
    if args.db:
        settings.storage.db_path = args.db
    configure_logging(level=settings.log_level)
    store = ResultStore(settings.storage.db_path)

    handlers = {
        "run": cmd_run,
        "show": cmd_show,
        "list": cmd_list,
        "serve": cmd_serve,
    }
    try:
        return handlers[args.command](args, settings, store)
    except StoreError as e:
        print(f"Error: result store unavailable: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
