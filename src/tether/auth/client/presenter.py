"""Ways of getting an authorization URL in front of the user."""

from __future__ import annotations

import logging
import webbrowser
from typing import Protocol

logger = logging.getLogger(__name__)


class UrlPresenter(Protocol):
    """Shows an authorization URL to the user.

    Returns False when the URL could not be presented. A failed
    presentation never aborts the authorization flow.
    """

    def present(self, url: str) -> bool: ...


class BrowserPresenter:
    """Opens the URL in the system browser via ``webbrowser``."""

    def present(self, url: str) -> bool:
        try:
            opened = webbrowser.open(url)
        except (webbrowser.Error, OSError) as e:
            logger.debug(f"Browser launch failed: {e}")
            return False
        return bool(opened)
