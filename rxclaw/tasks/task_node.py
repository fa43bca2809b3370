import argparse
import asyncio
import importlib.util

from reactivex import operators as ops

from ..cli import to_cli
from ..node import DeviceIdentity, NodeClient
from ..node.capabilities import SystemCapability
from .common import build_providers, data_dir, load_settings, require_connection_settings

HAS_SCREEN = all(
    importlib.util.find_spec(name) is not None for name in ("mss", "numpy", "PIL")
)


def build_parser(subparsers: argparse._SubParsersAction):
    parser = subparsers.add_parser("node", help="connect as a node and serve capability commands.")
    parser.add_argument("--name", type=str, default=None, help="display name shown to operators")
    parser.add_argument("--allow-run", action="store_true", help="declare system.run")
    parser.add_argument("--no-screen", action="store_true", help="do not declare screen commands")
    parser.set_defaults(func=task)


def build_capabilities(parsed_args: argparse.Namespace, allow_run: bool) -> list:
    system = SystemCapability(allow_run=allow_run)
    capabilities = [system]
    if HAS_SCREEN and not parsed_args.no_screen:
        from ..node.capabilities.screen import ScreenCapability

        capabilities.append(ScreenCapability())
    return capabilities


def task(parsed_args: argparse.Namespace):
    tracer_provider, logger_provider = build_providers(parsed_args)
    settings = load_settings(parsed_args, logger_provider)
    require_connection_settings(settings)

    async def run_node():
        identity = DeviceIdentity.load_or_create(data_dir(parsed_args), logger_provider)
        capabilities = build_capabilities(
            parsed_args, parsed_args.allow_run or settings.allow_system_run
        )
        client = NodeClient(
            settings.gateway_url,
            settings.token,
            identity,
            capabilities=capabilities,
            display_name=parsed_args.name,
            logger_provider=logger_provider,
            tracer_provider=tracer_provider,
        )

        client.status.pipe(
            ops.map(lambda state: state.value),
            ops.distinct_until_changed(),
            to_cli("[status] "),
        ).subscribe()
        client.pairing.pipe(
            ops.map(lambda event: f"{event.status.value} {event.message or ''}".rstrip()),
            to_cli("[pairing] "),
        ).subscribe()
        client.invocations.pipe(
            ops.map(lambda request: f"{request.command} ({request.id})"),
            to_cli("[invoke] "),
        ).subscribe()
        client.results.pipe(
            ops.map(lambda result: f"{result.id} ok" if result.ok else f"{result.id} failed: {result.error}"),
            to_cli("[result] "),
        ).subscribe()
        capabilities[0].notifications.pipe(
            ops.map(lambda n: f"{n['title']}: {n['body']}"),
            to_cli("[notify] "),
        ).subscribe()

        print(f"Device {identity.short_device_id}... commands: {', '.join(client.registry.commands)}")
        await client.connect()
        try:
            await asyncio.Event().wait()  # run forever
        finally:
            await client.close()

    try:
        asyncio.run(run_node())
    except KeyboardInterrupt:
        print("\nKeyboard Interrupt.")
    finally:
        logger_provider.shutdown()
        tracer_provider.shutdown()
