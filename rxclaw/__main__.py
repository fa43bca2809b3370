import argparse

from .tasks import TASKS
from .tasks.common import add_global_arguments


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rxclaw", description="OpenClaw gateway client.")
    add_global_arguments(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)
    for module in TASKS:
        module.build_parser(subparsers)
    return parser


def main(argv: list[str] | None = None):
    parsed_args = build_parser().parse_args(argv)
    parsed_args.func(parsed_args)


if __name__ == "__main__":
    main()
