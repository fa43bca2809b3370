import argparse
import asyncio

from reactivex import operators as ops

from ..categorizer import NotificationCategorizer
from ..cli import from_cli, to_cli
from ..gateway import GatewayClient
from ..mechanism import GatewayError
from .common import build_providers, load_settings, require_connection_settings


def build_parser(subparsers: argparse._SubParsersAction):
    parser = subparsers.add_parser("chat", help="chat with the main session from the terminal.")
    parser.set_defaults(func=task)


def task(parsed_args: argparse.Namespace):
    tracer_provider, logger_provider = build_providers(parsed_args)
    settings = load_settings(parsed_args, logger_provider)
    require_connection_settings(settings)

    async def run_chat():
        client = GatewayClient(
            settings.gateway_url,
            settings.token,
            rules=settings.user_rules,
            categorizer=NotificationCategorizer(settings.prefer_structured_categories),
            logger_provider=logger_provider,
        )
        finished = asyncio.Event()

        async def send(line: str):
            try:
                await client.send_chat_message(line)
            except GatewayError as e:
                print(f"Not sent: {e}")

        client.notifications.pipe(
            ops.filter(lambda n: n.is_chat),
            ops.map(lambda n: n.message),
            to_cli("assistant: "),
        ).subscribe()

        def on_error(error):
            print(f"Error: {error}")
            finished.set()

        client.status.pipe(
            ops.map(lambda state: state.value),
            ops.distinct_until_changed(),
            from_cli(),
        ).subscribe(
            on_next=lambda line: asyncio.ensure_future(send(line)),
            on_error=on_error,
            on_completed=finished.set,
        )

        await client.connect()
        try:
            await finished.wait()
        finally:
            await client.close()

    try:
        asyncio.run(run_chat())
    except KeyboardInterrupt:
        print("\nKeyboard Interrupt.")
    finally:
        logger_provider.shutdown()
        tracer_provider.shutdown()
