"""``screen`` capability built on mss, numpy and Pillow.

Requires the ``screen`` extra. Grabs run in a worker thread so the event
loop keeps serving the socket while a frame is encoded.
"""

import asyncio
import base64
from io import BytesIO
from typing import Any

import mss
from mss.exception import ScreenShotError
import numpy as np
from PIL import Image

from ...mechanism import CapabilityExecutionError, ValidationError
from ..capability import Capability, InvokeRequest, optional_int

FORMATS = {"png": "PNG", "jpeg": "JPEG", "jpg": "JPEG"}


def rgb_ndarray_to_image_bytes(
    frame: np.ndarray, format: str = "png", quality: int = 80
) -> bytes:
    """
    Encode an RGB frame.

    Args:
        frame: Image as RGB array (H, W, 3), dtype uint8.
        format: ``png`` or ``jpeg``.
        quality: JPEG quality (1-100); ignored for PNG.
    """
    height, width = frame.shape[0], frame.shape[1]
    img = Image.frombytes("RGB", (width, height), np.ascontiguousarray(frame).tobytes())
    with BytesIO() as output:
        if FORMATS[format] == "JPEG":
            img.save(output, format="JPEG", quality=quality)
        else:
            img.save(output, format="PNG")
        return output.getvalue()


def downscale(frame: np.ndarray, max_width: int) -> np.ndarray:
    """Shrink ``frame`` to at most ``max_width`` pixels wide, keeping aspect."""
    height, width = frame.shape[0], frame.shape[1]
    if max_width <= 0 or width <= max_width:
        return frame
    new_height = max(1, round(height * max_width / width))
    with Image.fromarray(frame) as img:
        return np.asarray(img.resize((max_width, new_height), Image.Resampling.LANCZOS))


def list_monitors() -> list[dict[str, int]]:
    with mss.mss() as sct:
        # monitors[0] is the union of all screens
        return [
            {
                "index": index,
                "left": monitor["left"],
                "top": monitor["top"],
                "width": monitor["width"],
                "height": monitor["height"],
            }
            for index, monitor in enumerate(sct.monitors[1:])
        ]


def grab_screen(index: int = 0) -> np.ndarray:
    """RGB frame of monitor ``index`` (0 is the primary screen)."""
    with mss.mss() as sct:
        monitors = sct.monitors[1:]
        if not 0 <= index < len(monitors):
            raise ValidationError(f"Screen {index} not found ({len(monitors)} available)")
        return np.array(sct.grab(monitors[index]))[:, :, :3][:, :, ::-1]  # BGRA -> RGB


class ScreenCapability(Capability):
    category = "screen"
    commands = ("screen.list", "screen.capture")

    async def execute(self, request: InvokeRequest) -> Any:
        if request.command == "screen.list":
            return {"screens": await asyncio.to_thread(list_monitors)}
        return await asyncio.to_thread(self._capture, request.args)

    def _capture(self, args: dict[str, Any]) -> dict[str, Any]:
        index = optional_int(args, "screen", 0)
        format = str(args.get("format") or "png").lower()
        if format not in FORMATS:
            raise ValidationError(f"Unsupported format: {format}")
        quality = min(max(optional_int(args, "quality", 80), 1), 100)
        max_width = optional_int(args, "maxWidth", 0)

        try:
            frame = downscale(grab_screen(index), max_width)
            data = rgb_ndarray_to_image_bytes(frame, format, quality)
        except ScreenShotError as e:
            raise CapabilityExecutionError("screen.capture", str(e)) from e

        return {
            "format": "jpeg" if FORMATS[format] == "JPEG" else "png",
            "width": int(frame.shape[1]),
            "height": int(frame.shape[0]),
            "base64": base64.b64encode(data).decode("ascii"),
        }
