from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from homehub_mcp.config import DEFAULT_SERVER_NAME


@dataclass(frozen=True, eq=False)
class ServerIdentity:
    """A reachable server. Two identities are the same server when host:port match."""

    name: str
    host: str
    port: int
    scheme: str = "http"

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ServerIdentity):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def with_name(self, name: str) -> "ServerIdentity":
        return replace(self, name=name)

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "host": self.host, "port": self.port}
        if self.scheme != "http":
            data["scheme"] = self.scheme
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerIdentity":
        """Build from a stored {name, host, port} record. Raises on bad records."""
        host = data["host"]
        port = data["port"]
        if not isinstance(host, str) or not host:
            raise ValueError(f"invalid host: {host!r}")
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError(f"invalid port: {port!r}")
        scheme = data.get("scheme", "http")
        if scheme not in ("http", "https"):
            raise ValueError(f"invalid scheme: {scheme!r}")
        name = data.get("name")
        return cls(
            name=name if isinstance(name, str) else DEFAULT_SERVER_NAME,
            host=host,
            port=port,
            scheme=scheme,
        )


class WireModel(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True, populate_by_name=True)


class VideoItem(WireModel):
    id: str
    title: str = Field(alias="name")
    file: str = Field(alias="path")
    thumbnail: Optional[str] = Field(default=None, alias="thumbnail_url")
    duration: Optional[str] = None
    size: Optional[int] = None
    folder: Optional[str] = None
    stream_url: str
    modified_time: Optional[str] = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VideoItem):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)


class Folder(WireModel):
    # An empty name is the root ("all videos") entry.
    name: str
    path: str

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Folder):
            return NotImplemented
        return self.path == other.path

    def __hash__(self) -> int:
        return hash(self.path)


class PageState(WireModel):
    current_page: int
    total_pages: int
    per_page: int
    total_items: int = Field(alias="total_videos")

    @property
    def has_next(self) -> bool:
        return self.current_page < self.total_pages


class ServerDetails(WireModel):
    name: str
    version: str
    host: str
    port: int
    video_extensions: List[str]
    videos_per_page: int


class Endpoints(WireModel):
    folders: str
    refresh_cache: str
    search: str
    videos: str


class DiscoveryDetails(WireModel):
    bonjour_service: str
    service_type: str


class ServerCatalogInfo(WireModel):
    server: ServerDetails
    endpoints: Endpoints
    discovery: DiscoveryDetails


class VideoListResponse(WireModel):
    videos: List[VideoItem]
    folders: List[Folder]
    current_folder: str
    pagination: PageState


class FoldersResponse(WireModel):
    folders: List[Folder]
    total_folders: int


class SearchResults(WireModel):
    videos: List[VideoItem]
    folders: List[Folder]


class SearchResponse(WireModel):
    query: str
    results: SearchResults
    pagination: PageState
    total_results: int


@dataclass
class ListingContext:
    """What the current listing is, so "load more" knows which page to ask for."""

    kind: str  # "videos" or "search"
    folder: Optional[str] = None
    query: str = ""


@dataclass
class CatalogSnapshot:
    videos: List[VideoItem] = field(default_factory=list)
    folders: List[Folder] = field(default_factory=list)
    current_folder: str = ""
    page_state: Optional[PageState] = None
    server_info: Optional[ServerCatalogInfo] = None
    error: Optional[str] = None
    is_loading: bool = False
    context: Optional[ListingContext] = None

    def copy(self) -> "CatalogSnapshot":
        return CatalogSnapshot(
            videos=list(self.videos),
            folders=list(self.folders),
            current_folder=self.current_folder,
            page_state=self.page_state,
            server_info=self.server_info,
            error=self.error,
            is_loading=self.is_loading,
            context=ListingContext(**vars(self.context)) if self.context else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "videos": [v.model_dump() for v in self.videos],
            "folders": [f.model_dump() for f in self.folders],
            "current_folder": self.current_folder,
            "pagination": self.page_state.model_dump() if self.page_state else None,
            "has_more": bool(self.page_state and self.page_state.has_next),
            "error": self.error,
            "is_loading": self.is_loading,
        }
