import asyncio
import base64
from io import BytesIO

import pytest

from rxclaw.mechanism import ValidationError
from rxclaw.node import InvokeRequest

from conftest import HAS_SCREEN

pytestmark = pytest.mark.skipif(not HAS_SCREEN, reason="screen extra not installed")


class FakeScreenShot:
    def __init__(self, monitors, frame):
        self.monitors = monitors
        self._frame = frame
        self.grabbed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def grab(self, monitor):
        self.grabbed.append(monitor)
        return self._frame


@pytest.fixture
def screen(monkeypatch):
    import numpy as np

    from rxclaw.node.capabilities import screen as module

    # 2x4 BGRA frame: pure blue in BGRA order
    frame = np.zeros((2, 4, 4), dtype=np.uint8)
    frame[:, :, 0] = 255
    frame[:, :, 3] = 255
    monitors = [
        {"left": 0, "top": 0, "width": 8, "height": 2},
        {"left": 0, "top": 0, "width": 4, "height": 2},
        {"left": 4, "top": 0, "width": 4, "height": 2},
    ]
    fake = FakeScreenShot(monitors, frame)
    monkeypatch.setattr(module.mss, "mss", lambda: fake)
    return module, fake


def execute(capability, command, **args):
    return asyncio.run(capability.execute(InvokeRequest("r1", command, args)))


class TestScreenHelpers:
    def test_grab_converts_to_rgb(self, screen):
        module, fake = screen

        frame = module.grab_screen(1)

        assert frame.shape == (2, 4, 3)
        assert tuple(frame[0, 0]) == (0, 0, 255)
        assert fake.grabbed == [fake.monitors[2]]

    def test_grab_rejects_unknown_screen(self, screen):
        module, _ = screen

        with pytest.raises(ValidationError):
            module.grab_screen(5)

    def test_list_skips_virtual_union(self, screen):
        module, _ = screen

        assert [m["index"] for m in module.list_monitors()] == [0, 1]
        assert module.list_monitors()[1]["left"] == 4

    def test_downscale_keeps_aspect(self, screen):
        import numpy as np

        module, _ = screen
        frame = np.zeros((100, 200, 3), dtype=np.uint8)

        assert module.downscale(frame, 50).shape == (25, 50, 3)
        assert module.downscale(frame, 0) is frame
        assert module.downscale(frame, 400) is frame


class TestScreenCapability:
    def test_capture_png(self, screen):
        from PIL import Image

        module, _ = screen

        result = execute(module.ScreenCapability(), "screen.capture")

        assert (result["format"], result["width"], result["height"]) == ("png", 4, 2)
        with Image.open(BytesIO(base64.b64decode(result["base64"]))) as img:
            assert img.format == "PNG"
            assert img.size == (4, 2)
            assert img.getpixel((0, 0)) == (0, 0, 255)

    def test_capture_jpeg_downscaled(self, screen):
        module, _ = screen

        result = execute(module.ScreenCapability(), "screen.capture", format="JPG", maxWidth=2, quality=500)

        assert (result["format"], result["width"], result["height"]) == ("jpeg", 2, 1)

    def test_capture_rejects_unknown_format(self, screen):
        module, _ = screen

        with pytest.raises(ValidationError, match="Unsupported format"):
            execute(module.ScreenCapability(), "screen.capture", format="gif")

    def test_list(self, screen):
        module, _ = screen

        assert len(execute(module.ScreenCapability(), "screen.list")["screens"]) == 2
