"""Terminal helpers: an interactive prompt stream and a printing tap."""

import asyncio
from contextlib import nullcontext
from typing import Any, Callable, Literal

from prompt_toolkit import PromptSession, print_formatted_text
from prompt_toolkit.patch_stdout import patch_stdout
from reactivex import Observable
from reactivex import operators as ops
from reactivex.disposable import Disposable

from .mechanism import RxException


def from_cli(
    loop: asyncio.AbstractEventLoop | None = None,
    *,
    mode: Literal["queue", "update"] = "update",
    session: PromptSession | None = None,
):
    """
    Operator turning a stream of prompt labels into a stream of typed lines.

    The source decides what the prompt shows (for example the connection
    state); every line the user enters is emitted downstream. The prompt
    keeps running until EOF or Ctrl-C, which complete the output stream.

    Args:
        loop: Event loop to run the prompt on. The running loop when None.
        mode: ``"update"`` replaces the label shown while the user is
            typing; ``"queue"`` waits for a label before each prompt and shows
            them in arrival order.
        session: prompt_toolkit session, injectable for tests.

    Errors raised by prompt_toolkit are forwarded as :class:`RxException`.
    """
    if mode not in ("queue", "update"):
        raise ValueError(f"Invalid mode: {mode}. Choose from 'queue' or 'update'.")

    def _from_cli(source: Observable) -> Observable:
        def subscribe(observer, scheduler=None):
            _session = session or PromptSession()
            _loop = loop or asyncio.get_running_loop()
            labels: asyncio.Queue = asyncio.Queue()
            label = {"text": ""}
            stopped = asyncio.Event()

            def _message() -> str:
                return f"{label['text']}> " if label["text"] else "> "

            async def prompt_loop():
                while not stopped.is_set():
                    if mode == "queue":
                        label["text"] = await labels.get()
                    # an injected session owns its own output
                    redirect = patch_stdout() if session is None else nullcontext()
                    try:
                        with redirect:
                            line = await _session.prompt_async(_message)
                    except (EOFError, KeyboardInterrupt):
                        stopped.set()
                        observer.on_completed()
                        return
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        stopped.set()
                        observer.on_error(
                            RxException(exc, source="from_cli", note="Prompt failed")
                        )
                        return
                    if line.strip():
                        observer.on_next(line)

            task = _loop.create_task(prompt_loop())

            def _on_next(value: Any) -> None:
                if mode == "queue":
                    labels.put_nowait(str(value))
                    return
                label["text"] = str(value)
                app = _session.app
                if app is not None and app.is_running:
                    app.invalidate()

            def _thread_safe(value: Any) -> None:
                _loop.call_soon_threadsafe(_on_next, value)

            subscription = source.subscribe(
                on_next=_thread_safe,
                on_error=observer.on_error,
                scheduler=scheduler,
            )

            def dispose() -> None:
                stopped.set()
                subscription.dispose()
                task.cancel()

            return Disposable(dispose)

        return Observable(subscribe)

    return _from_cli


def to_cli(prefix: str = "", printer: Callable[[str], None] | None = None):
    """
    Tap that prints every value and passes it through unchanged.

    Printing goes through prompt_toolkit so output does not corrupt a
    prompt that is currently being edited.
    """
    _print = printer or print_formatted_text

    def _show(value: Any) -> None:
        _print(f"{prefix}{value}")

    return ops.do_action(on_next=_show)
