"""sg-cleanup: find and delete security groups nothing uses."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from sgcleanup.config import Settings
from sgcleanup.noise import make_noise
from sgcleanup.regions import REGIONS, discover_regions, get_regions
from sgcleanup.scanner import RegionScanResult, delete_unused_groups, scan_all_regions

logger = logging.getLogger(__name__)

QUIET_LOGGERS = ("botocore", "boto3", "urllib3")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sg-cleanup",
        description="Find security groups that no resource uses, directly or through other groups.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    parser.add_argument("--profile", default=None, help="AWS profile name (optional).")

    scan_opts = argparse.ArgumentParser(add_help=False)
    scan_opts.add_argument(
        "--regions",
        nargs="*",
        default=None,
        metavar="REGION",
        help=f"Regions to scan (default: all {len(REGIONS)} regions from config).",
    )
    scan_opts.add_argument(
        "--discover",
        action="store_true",
        help="Scan every region enabled for the account instead of the configured list.",
    )
    scan_opts.add_argument("--max-in-flight", type=int, default=None, help="Concurrent AWS calls (default 8).")
    scan_opts.add_argument(
        "--task-timeout", type=float, default=None, help="Seconds before a single fetch marks its region failed."
    )

    sub = parser.add_subparsers(dest="command", required=True)

    print_cmd = sub.add_parser(
        "print", parents=[scan_opts], help="Print all security groups and the services referencing them."
    )
    print_cmd.add_argument(
        "--output",
        choices=("table", "json"),
        default="table",
        help="Output format: table (human) or json.",
    )

    clean_cmd = sub.add_parser("clean", parents=[scan_opts], help="Delete unused security groups.")
    clean_cmd.add_argument("--dry-run", action="store_true", help="Only list what would be deleted.")

    noise_cmd = sub.add_parser("make-noise", help="Create empty security groups in the default region.")
    noise_cmd.add_argument("--count", type=int, default=20)
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides = {}
    if getattr(args, "max_in_flight", None) is not None:
        overrides["max_in_flight"] = args.max_in_flight
    if getattr(args, "task_timeout", None) is not None:
        overrides["task_timeout"] = args.task_timeout
    return dataclasses.replace(Settings.from_env(), **overrides)


def resolve_regions(args: argparse.Namespace, session: boto3.Session) -> list[str]:
    if args.discover:
        return discover_regions(session)
    return get_regions(args.regions or None)


def print_table(results: list[RegionScanResult]) -> None:
    total_unused = 0
    for r in results:
        if r.error:
            print(f"[{r.region}] ERROR: {r.error}")
            continue
        if not r.groups:
            print(f"[{r.region}] No security groups.")
            continue
        unused = len(r.unused)
        total_unused += unused
        print(f"[{r.region}] {len(r.groups)} security group(s), {unused} unused:")
        for g in r.groups:
            marker = "UNUSED" if g.unused else "      "
            refs = ", ".join(g.referenced_by) or "-"
            print(f"  {marker} {g.group_id}  {g.group_name}  <- {refs}")

    print()
    print(f"Total unused SGs across regions: {total_unused}")


def run_print(args: argparse.Namespace, session: boto3.Session) -> int:
    results = scan_all_regions(resolve_regions(args, session), session=session, settings=settings_from_args(args))
    if args.output == "json":
        print(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        print_table(results)
    return 1 if any(r.error for r in results) else 0


def run_clean(args: argparse.Namespace, session: boto3.Session) -> int:
    settings = settings_from_args(args)
    results = scan_all_regions(resolve_regions(args, session), session=session, settings=settings)
    if args.dry_run:
        for r in results:
            for g in r.unused:
                print(f"would delete {g.region} {g.group_id} {g.group_name}")
    else:
        outcome = delete_unused_groups(results, session=session, passes=settings.delete_passes)
        print(f"Deleted {len(outcome.deleted)} security group(s), {len(outcome.failed)} failed.")
    return 1 if any(r.error for r in results) else 0


def run_make_noise(args: argparse.Namespace, session: boto3.Session) -> int:
    created = make_noise(args.count, session=session)
    print(f"Created {len(created)} security group(s).")
    return 0


COMMANDS = {
    "print": run_print,
    "clean": run_clean,
    "make-noise": run_make_noise,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        session = boto3.Session(profile_name=args.profile) if args.profile else boto3.Session()
        return COMMANDS[args.command](args, session)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (ClientError, BotoCoreError) as e:
        logger.error("AWS error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
