import logging
from typing import List, Optional

from schemas import Notification

logger = logging.getLogger(__name__)


class Toaster:
    """Transient notifications waiting to be shown to one client."""

    def __init__(self):
        self._pending: List[Notification] = []

    def _push(self, kind: str, title: str, description: Optional[str]) -> Notification:
        note = Notification(kind=kind, title=title, description=description)
        logger.info("toast[%s] %s%s", kind, title, f": {description}" if description else "")
        self._pending.append(note)
        return note

    def success(self, title: str, description: Optional[str] = None) -> Notification:
        return self._push("success", title, description)

    def error(self, title: str, description: Optional[str] = None) -> Notification:
        return self._push("error", title, description)

    def info(self, title: str, description: Optional[str] = None) -> Notification:
        return self._push("info", title, description)

    @property
    def pending(self) -> List[Notification]:
        return list(self._pending)

    def drain(self) -> List[Notification]:
        out, self._pending = self._pending, []
        return out


class Navigator:
    def __init__(self, start: str = "/"):
        self.history: List[str] = [start]

    @property
    def location(self) -> str:
        return self.history[-1]

    def navigate(self, path: str) -> None:
        logger.debug("navigate %s -> %s", self.location, path)
        self.history.append(path)
