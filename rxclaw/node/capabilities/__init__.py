"""Built-in node capabilities.

``screen`` needs the optional ``screen`` extra and is imported from
:mod:`rxclaw.node.capabilities.screen` directly.
"""

from .system import SystemCapability

__all__ = ["SystemCapability"]
