import argparse
import json

from ..telemetry import REDACTED
from .common import load_settings, settings_path


def build_parser(subparsers: argparse._SubParsersAction):
    parser = subparsers.add_parser("config", help="show or change the stored settings.")
    parser.add_argument(
        "--set",
        dest="assignments",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="assign a setting; may be repeated",
    )
    parser.add_argument("--show-token", action="store_true", help="print the token unmasked")
    parser.set_defaults(func=task)


def apply_assignments(settings, assignments: list[str]) -> None:
    for assignment in assignments:
        key, sep, value = assignment.partition("=")
        if not sep:
            raise SystemExit(f"Expected KEY=VALUE, got {assignment!r}")
        try:
            settings.set_value(key.strip(), value)
        except (KeyError, ValueError) as e:
            raise SystemExit(str(e).strip("'\""))


def task(parsed_args: argparse.Namespace):
    settings = load_settings(parsed_args)
    if parsed_args.assignments:
        apply_assignments(settings, parsed_args.assignments)
        path = settings.save(settings_path(parsed_args))
        print(f"Saved {path}")

    data = settings.to_dict()
    if data["token"] and not parsed_args.show_token:
        data["token"] = REDACTED
    print(json.dumps(data, indent=2, ensure_ascii=False))
