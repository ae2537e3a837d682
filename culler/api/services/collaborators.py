"""Capabilities the decision core consumes from integration clients.

Implementations wrap the media server, the TV/movie download managers and
the request tracker. Any implementation should raise
``CollaboratorUnavailable`` when the remote service cannot be reached so
the core can flag the affected item and notify operators.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from culler.api.schemas.media import (
    MediaItem,
    MediaKind,
    ManagerKind,
    WatchEvent,
    CatalogEpisode,
)

logger = logging.getLogger(__name__)


class CollaboratorUnavailable(Exception):
    """An integration call failed or the service could not be reached"""

    def __init__(self, service: str, message: str):
        self.service = service
        self.message = message
        super().__init__(f"{service}: {message}")


class MediaServer(ABC):
    """Library metadata, watch history and library mutation"""

    name = "media_server"

    @abstractmethod
    async def list_items(self, kind: MediaKind, library_ids: List[str]) -> List[MediaItem]:
        """Items of a kind, limited to the given libraries (empty means all)"""

    @abstractmethod
    async def get_item(self, library_id: str) -> Optional[MediaItem]:
        """Fresh snapshot of one item, None when it no longer exists"""

    @abstractmethod
    async def list_shows(self) -> List[MediaItem]:
        pass

    @abstractmethod
    async def list_episodes(self, show_id: str) -> List[MediaItem]:
        """Episodes of a show currently in the library"""

    @abstractmethod
    async def get_watch_events(self, show_id: str) -> List[WatchEvent]:
        """Every recorded episode watch for a show, all viewers"""

    @abstractmethod
    async def add_to_collection(self, item: MediaItem, collection_name: str) -> None:
        pass

    @abstractmethod
    async def delete_item(self, item: MediaItem) -> None:
        pass

    @abstractmethod
    async def delete_files(self, item: MediaItem) -> None:
        pass


class DownloadManager(ABC):
    """A TV or movie download manager"""

    kind: ManagerKind = ManagerKind.tv

    @property
    def name(self) -> str:
        return f"{self.kind.value}_manager"

    @abstractmethod
    async def unmonitor(self, item: MediaItem) -> None:
        pass

    @abstractmethod
    async def delete(self, item: MediaItem, delete_files: bool, add_exclusion: bool) -> None:
        """Remove the title; episodes are unmonitored and their file deleted"""

    @abstractmethod
    async def add_tag(self, item: MediaItem, tag: str) -> None:
        pass

    async def list_episodes(self, show_id: str) -> List[CatalogEpisode]:
        """Full episode catalog of a show, including files no longer present"""
        raise NotImplementedError(f"{self.name} has no episode catalog")

    async def trigger_redownload(self, show_id: str, season: int, episode: int, emergency: bool) -> None:
        raise NotImplementedError(f"{self.name} cannot re-acquire episodes")


class RequestTracker(ABC):
    """Pending requests and watchlists"""

    name = "request_tracker"

    @abstractmethod
    async def clear_request(self, item: MediaItem) -> None:
        pass

    @abstractmethod
    async def watchlist_added_at(self, item: MediaItem) -> Optional[datetime]:
        """Most recent time any user put the item on a watchlist, None if nobody has"""


class Notifier(ABC):
    """Fire-and-forget event sink"""

    @abstractmethod
    async def notify(self, event: str, data: Dict[str, Any]) -> None:
        pass


@dataclass
class Collaborators:
    """Everything the core talks to"""
    media_server: MediaServer
    managers: Dict[ManagerKind, DownloadManager] = field(default_factory=dict)
    requests: Optional[RequestTracker] = None
    notifier: Optional[Notifier] = None

    def manager(self, kind: ManagerKind) -> Optional[DownloadManager]:
        return self.managers.get(kind)

    async def notify(self, event: str, data: Dict[str, Any]) -> None:
        """Send an event, never letting a delivery problem reach the caller"""
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event, data)
        except Exception as e:
            logger.warning(f"Notification {event} failed: {e}")
