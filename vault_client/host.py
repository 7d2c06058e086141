from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable

TabUpdatedListener = Callable[[int, str], None]
TabRemovedListener = Callable[[int], None]


class HostError(RuntimeError):
    pass


class BrowserHost(ABC):
    """Browser capabilities the background process cannot perform itself."""

    @abstractmethod
    def create_tab(self, url: str) -> int:
        """Open a tab and return its id; raises HostError on failure."""

    @abstractmethod
    def remove_tab(self, tab_id: int) -> None:
        """Close a tab without waiting; a tab that is already gone is not an error."""

    @abstractmethod
    def send_tab_message(self, tab_id: int, message: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def contains_permission(self, origin: str) -> bool:
        ...

    @abstractmethod
    def request_permission(self, origin: str) -> bool:
        ...

    @abstractmethod
    def set_badge(self, text: str, color: str | None = None) -> None:
        ...

    @abstractmethod
    def add_tab_updated_listener(self, listener: TabUpdatedListener) -> None:
        ...

    @abstractmethod
    def remove_tab_updated_listener(self, listener: TabUpdatedListener) -> None:
        ...

    @abstractmethod
    def add_tab_removed_listener(self, listener: TabRemovedListener) -> None:
        ...

    @abstractmethod
    def remove_tab_removed_listener(self, listener: TabRemovedListener) -> None:
        ...
