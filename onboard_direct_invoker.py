import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from ruamel.yaml import YAML

from onboard_runner import FlowOutcome, OnboardOptions, OnboardResult, onboard


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one Stripe onboarding flow locally")
    parser.add_argument("url", help="Account onboarding link to complete")
    parser.add_argument(
        "--values-file",
        dest="values_file",
        default=None,
        help="YAML or JSON file with onboarding values overriding the generated defaults",
    )
    parser.add_argument("--business-type", dest="business_type", choices=["individual", "company", "non_profit"], default=None)
    parser.add_argument("--country", dest="country", default=None, help="Two-letter country code, e.g. US or DK")
    parser.add_argument("--headful", action="store_true", help="Show the browser window")
    parser.add_argument("--verbose", action="store_true", help="Log every progress step")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="On failure, show diagnostics in the page and keep the browser open",
    )
    parser.add_argument(
        "--idle-ms",
        dest="idle_ms",
        type=int,
        default=None,
        help="Network idle window required before and after each step",
    )
    parser.add_argument("--target-host", dest="target_host", default=None, help="Host the flow must stay on")
    return parser.parse_args()


def load_values_file(path: Path) -> Dict[str, Any]:
    # YAML is a superset of JSON, so one loader covers both formats.
    with path.open("r", encoding="utf-8") as f:
        data = YAML(typ="safe").load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit(f"Values file {path} must contain a mapping, got {type(data).__name__}")
    return data


def build_options(args: argparse.Namespace) -> OnboardOptions:
    values: Dict[str, Any] = {}
    if args.values_file:
        values.update(load_values_file(Path(args.values_file)))
    if args.business_type:
        values["business_type"] = args.business_type
    if args.country:
        values["country"] = args.country.upper()

    return OnboardOptions(
        url=args.url,
        headless=not args.headful,
        silent=not args.verbose,
        values=values,
        debug=(values or True) if args.debug else False,
        **{
            k: v
            for k, v in {
                "idle_time_ms": args.idle_ms,
                "target_host": args.target_host,
            }.items()
            if v is not None
        },
    )


async def run_onboarding(options: OnboardOptions) -> OnboardResult:
    result = await onboard(options)
    if result.outcome is FlowOutcome.AWAITING_DEBUG_INSPECTION:
        print("Flow failed in debug mode. Browser left open; press Ctrl+C to exit and close it.")
        try:
            await asyncio.Event().wait()
        finally:
            await result.session.close()
    return result


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

    options = build_options(args)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(run_onboarding(options))
        print(json.dumps({"outcome": result.outcome.value, "steps": result.steps}, indent=2))
    except KeyboardInterrupt:
        print("Stopping onboarding...")
        # Cancelling lets run_onboarding close a browser left open for inspection.
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()


if __name__ == "__main__":
    main()
