"""``system`` capability: notifications, executable lookup and command runs."""

import asyncio
import os
import shlex
import shutil
from typing import Any

from reactivex import Observable
from reactivex import operators as ops
from reactivex.subject import Subject

from ...mechanism import CapabilityExecutionError, ValidationError
from ..capability import Capability, InvokeRequest, optional_int, require_str

DEFAULT_RUN_TIMEOUT_MS = 30_000
MAX_OUTPUT_CHARS = 64_000


def _decode_output(data: bytes | None) -> str:
    text = (data or b"").decode("utf-8", errors="replace")
    if len(text) > MAX_OUTPUT_CHARS:
        return text[:MAX_OUTPUT_CHARS] + "\n[truncated]"
    return text


def parse_argv(args: dict[str, Any]) -> list[str]:
    """``command`` as a list of strings, or a shell-style string split with shlex."""
    command = args.get("command")
    if isinstance(command, str):
        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise ValidationError(f"Invalid command: {e}") from e
    elif isinstance(command, list) and all(isinstance(part, str) for part in command):
        argv = list(command)
    else:
        raise ValidationError("Missing required argument: command")
    if not argv:
        raise ValidationError("Missing required argument: command")
    return argv


class SystemCapability(Capability):
    """Host-level commands.

    ``system.run`` is only declared when ``allow_run`` is set; the
    dispatcher then reports it as unsupported.
    """

    category = "system"

    def __init__(self, allow_run: bool = False):
        self.allow_run = allow_run
        self.commands = ("system.notify", "system.which") + (
            ("system.run",) if allow_run else ()
        )
        self._notifications: Subject = Subject()

    @property
    def notifications(self) -> Observable:
        """``{"title", "body"}`` dicts requested by ``system.notify``."""
        return self._notifications.pipe(ops.share())

    async def execute(self, request: InvokeRequest) -> Any:
        if request.command == "system.notify":
            return self._notify(request.args)
        if request.command == "system.which":
            return self._which(request.args)
        if request.command == "system.run" and self.allow_run:
            return await self._run(request.args)
        raise CapabilityExecutionError(request.command, "command not available")

    def _notify(self, args: dict[str, Any]) -> dict[str, Any]:
        title = args.get("title") or "OpenClaw"
        body = args.get("body") or args.get("message") or ""
        if not isinstance(title, str) or not isinstance(body, str):
            raise ValidationError("title and body must be strings")
        self._notifications.on_next({"title": title, "body": body})
        return {"shown": True}

    def _which(self, args: dict[str, Any]) -> dict[str, Any]:
        name = require_str(args, "bin")
        return {"bin": name, "path": shutil.which(name)}

    async def _run(self, args: dict[str, Any]) -> dict[str, Any]:
        argv = parse_argv(args)
        cwd = args.get("cwd")
        if cwd is not None and (not isinstance(cwd, str) or not os.path.isdir(cwd)):
            raise ValidationError(f"Invalid cwd: {cwd}")
        timeout_ms = optional_int(args, "timeoutMs", DEFAULT_RUN_TIMEOUT_MS)
        if timeout_ms <= 0:
            timeout_ms = DEFAULT_RUN_TIMEOUT_MS

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CapabilityExecutionError("system.run", f"{argv[0]}: {e.strerror or e}") from e

        timed_out = False
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            timed_out = True
            process.kill()
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # the invoke was abandoned (disconnect); the child goes with it
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        return {
            "exitCode": process.returncode,
            "stdout": _decode_output(stdout),
            "stderr": _decode_output(stderr),
            "timedOut": timed_out,
        }
