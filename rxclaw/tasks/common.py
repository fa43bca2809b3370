"""Helpers shared by the command-line tasks."""

import argparse
from pathlib import Path

from opentelemetry._logs import SeverityNumber

from .. import __version__
from ..config import SETTINGS_FILE, Settings, default_data_dir, is_valid_gateway_url
from ..telemetry import (
    ConsoleLogRecordExporter,
    FileLogRecordExporter,
    configure_telemetry,
)


def add_global_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--data-dir", type=str, default=None, help="settings and identity directory")
    parser.add_argument("--url", type=str, default=None, help="gateway URL (ws, wss, http or https)")
    parser.add_argument("--token", type=str, default=None, help="operator token")
    parser.add_argument("--log-file", type=str, default=None, help="write logs to this file instead of stderr")
    parser.add_argument("--log-format", type=str, choices=["text", "json"], default="text")
    parser.add_argument("--verbose", "-v", action="store_true", help="include debug logs")


def data_dir(parsed_args: argparse.Namespace) -> Path:
    if parsed_args.data_dir:
        return Path(parsed_args.data_dir).expanduser()
    return default_data_dir()


def settings_path(parsed_args: argparse.Namespace) -> Path:
    return data_dir(parsed_args) / SETTINGS_FILE


def load_settings(parsed_args: argparse.Namespace, logger_provider=None) -> Settings:
    """Stored settings with environment and command-line overrides applied."""
    settings = Settings.load(settings_path(parsed_args), logger_provider).with_env()
    if parsed_args.url:
        settings.gateway_url = parsed_args.url
    if parsed_args.token:
        settings.token = parsed_args.token
    return settings


def require_connection_settings(settings: Settings) -> None:
    """Exit with a message when the gateway cannot be reached as configured."""
    if not is_valid_gateway_url(settings.gateway_url):
        raise SystemExit(f"Invalid gateway URL: {settings.gateway_url!r}")
    if not settings.token:
        raise SystemExit("No gateway token configured. Pass --token or run: rxclaw config --set token=...")


def build_providers(parsed_args: argparse.Namespace):
    """Tracer and logger providers honouring ``--log-file``, ``--log-format`` and ``--verbose``."""
    min_severity = SeverityNumber.DEBUG if parsed_args.verbose else SeverityNumber.INFO
    if parsed_args.log_file:
        exporter = FileLogRecordExporter(
            parsed_args.log_file,
            format=parsed_args.log_format,
            min_severity=min_severity,
        )
    else:
        exporter = ConsoleLogRecordExporter(
            format=parsed_args.log_format,
            min_severity=min_severity,
        )
    return configure_telemetry(
        service_version=__version__,
        log_exporter=exporter,
        batch_logs=bool(parsed_args.log_file),
    )
