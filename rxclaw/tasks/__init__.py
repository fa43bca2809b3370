"""Command-line tasks.

Each module exposes ``build_parser(subparsers)`` registering its
sub-command and ``task(parsed_args)`` running it.
"""

from . import task_chat, task_config, task_node, task_operator

TASKS = (task_operator, task_node, task_chat, task_config)

__all__ = ["TASKS"]
