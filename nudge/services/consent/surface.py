"""
Interactive consent surface: the window where the user grants Gmail access.
The coordinator opens it but cannot read anything back from it.
"""

import webbrowser
from abc import ABC, abstractmethod

from nudge.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ConsentSurface(ABC):
    @abstractmethod
    def open(self, url: str, width: int, height: int) -> bool:
        """Open the surface at url. False means the host refused to open it."""

    @abstractmethod
    def is_closed(self) -> bool:
        """Best-effort closure detection. May raise when the state is unreadable."""

    @abstractmethod
    def close(self) -> None:
        """Close the surface if the host allows it."""


class BrowserConsentSurface(ConsentSurface):
    """
    Opens the consent page in the user's default browser.

    Browsers do not report tab closure to other processes, so `is_closed`
    always answers False and the hard timeout is what ends an abandoned flow.
    """

    def __init__(self):
        self._opened = False

    def open(self, url: str, width: int, height: int) -> bool:
        # Window geometry is a hint browsers ignore for new tabs
        try:
            self._opened = webbrowser.open(url, new=1)
        except webbrowser.Error as e:
            logger.warning("Browser could not be launched", error=str(e))
            self._opened = False
        return self._opened

    def is_closed(self) -> bool:
        return False

    def close(self) -> None:
        self._opened = False
