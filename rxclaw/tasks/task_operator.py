import argparse
import asyncio

from reactivex import operators as ops

from ..categorizer import NotificationCategorizer
from ..cli import to_cli
from ..gateway import GatewayClient
from .common import build_providers, load_settings, require_connection_settings


def build_parser(subparsers: argparse._SubParsersAction):
    parser = subparsers.add_parser("operator", help="connect as operator and print gateway state.")
    parser.add_argument("--poll-interval", type=float, default=30.0, help="seconds between refreshes")
    parser.set_defaults(func=task)


def describe_sessions(sessions) -> str:
    if not sessions:
        return "no sessions"
    return " | ".join(session.display_text for session in sessions)


def task(parsed_args: argparse.Namespace):
    tracer_provider, logger_provider = build_providers(parsed_args)
    settings = load_settings(parsed_args, logger_provider)
    require_connection_settings(settings)

    async def run_operator():
        client = GatewayClient(
            settings.gateway_url,
            settings.token,
            rules=settings.user_rules,
            categorizer=NotificationCategorizer(settings.prefer_structured_categories),
            poll_interval=parsed_args.poll_interval,
            logger_provider=logger_provider,
        )

        client.status.pipe(
            ops.map(lambda state: state.value),
            ops.distinct_until_changed(),
            to_cli("[status] "),
        ).subscribe()
        client.activity.pipe(
            ops.map(lambda activity: activity.display_text or "idle"),
            ops.distinct_until_changed(),
            to_cli("[activity] "),
        ).subscribe()
        client.notifications.pipe(
            ops.filter(settings.should_show),
            ops.map(lambda n: f"{n.title}: {n.message}"),
            to_cli("[notify] "),
        ).subscribe()
        client.channel_health.pipe(
            ops.map(lambda channels: " | ".join(c.display_text for c in channels)),
            ops.distinct_until_changed(),
            to_cli("[channels] "),
        ).subscribe()
        client.sessions.pipe(
            ops.map(describe_sessions),
            ops.distinct_until_changed(),
            to_cli("[sessions] "),
        ).subscribe()
        client.usage.pipe(
            ops.map(lambda usage: usage.display_text),
            ops.distinct_until_changed(),
            to_cli("[usage] "),
        ).subscribe()
        client.nodes.pipe(
            ops.map(lambda nodes: " | ".join(n.display_text for n in nodes) or "no nodes"),
            ops.distinct_until_changed(),
            to_cli("[nodes] "),
        ).subscribe()

        await client.connect()
        try:
            await asyncio.Event().wait()  # run forever
        finally:
            await client.close()

    try:
        asyncio.run(run_operator())
    except KeyboardInterrupt:
        print("\nKeyboard Interrupt.")
    finally:
        logger_provider.shutdown()
        tracer_provider.shutdown()
