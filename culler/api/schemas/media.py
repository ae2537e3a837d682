from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum


class MediaKind(str, Enum):
    """Kind of library item a rule can target"""
    movie = "movie"
    show = "show"
    season = "season"
    episode = "episode"


class ManagerKind(str, Enum):
    """Download manager flavour"""
    tv = "tv"
    movie = "movie"


def manager_for(kind: MediaKind) -> ManagerKind:
    """Return the download manager that owns a media kind"""
    return ManagerKind.movie if kind == MediaKind.movie else ManagerKind.tv


class MediaItem(BaseModel):
    """Read-only attribute snapshot of one library item"""
    model_config = ConfigDict(frozen=True)

    library_id: str = Field(..., description="Media server item id")
    external_id: Optional[int] = Field(None, description="Metadata provider id (TMDB/TVDB)")
    kind: MediaKind
    title: str = ""
    library_section: Optional[str] = Field(None, description="Library the item belongs to")
    show_id: Optional[str] = Field(None, description="Owning show for seasons and episodes")
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    watched: bool = False
    view_count: int = 0
    last_watched_at: Optional[datetime] = None
    added_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    year: Optional[int] = None
    rating: Optional[float] = None
    genres: List[str] = Field(default_factory=list)
    collections: List[str] = Field(default_factory=list, description="Media server collections")
    tags: List[str] = Field(default_factory=list, description="Download manager tags")
    watched_by: List[str] = Field(default_factory=list, description="Viewer ids with a recorded watch")
    content_rating: Optional[str] = None
    file_size_bytes: Optional[int] = None
    monitored: bool = True
    has_active_request: bool = False
    on_watchlist: bool = False

    @property
    def media_key(self) -> str:
        return self.library_id

    @property
    def display_title(self) -> str:
        if self.kind == MediaKind.episode and self.season_number is not None:
            return f"{self.title} S{self.season_number:02d}E{(self.episode_number or 0):02d}"
        if self.kind == MediaKind.season and self.season_number is not None:
            return f"{self.title} Season {self.season_number}"
        return self.title


class WatchEvent(BaseModel):
    """A single episode watch by one viewer"""
    model_config = ConfigDict(frozen=True)

    viewer_id: str
    show_id: str
    season: int
    episode: int
    watched_at: datetime


class CatalogEpisode(BaseModel):
    """One episode as known to the TV download manager"""
    model_config = ConfigDict(frozen=True)

    season: int
    episode: int
    present: bool = Field(True, description="Whether the file is currently in the library")
    library_id: Optional[str] = Field(None, description="Media server id when present")
    manager_episode_id: Optional[str] = None


class ShowCatalog(BaseModel):
    """Every episode of a show, in (season, episode) order"""
    show_id: str
    title: str = ""
    episodes: List[CatalogEpisode] = Field(default_factory=list)

    def ordered(self, include_specials: bool = False) -> List[CatalogEpisode]:
        eps = [e for e in self.episodes if include_specials or e.season != 0]
        return sorted(eps, key=lambda e: (e.season, e.episode))

    def ordinals(self, include_specials: bool = False) -> dict:
        """Map (season, episode) to a 1-based ordinal"""
        return {
            (e.season, e.episode): i + 1
            for i, e in enumerate(self.ordered(include_specials))
        }
