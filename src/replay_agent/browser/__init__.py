"""Browser automation module using Playwright."""

from .driver import PlaywrightDriver
from .manager import BrowserManager
from .login import FormLoginExecutor

__all__ = ["PlaywrightDriver", "BrowserManager", "FormLoginExecutor"]
