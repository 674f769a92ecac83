import asyncio
import logging
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Type, TypeVar
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError
from yarl import URL

from homehub_mcp.config import get_request_timeout
from homehub_mcp.errors import (
    CatalogError,
    DecodeErrorKind,
    DecodeFailure,
    HTTPStatusError,
    InvalidRequest,
    TransportFailure,
)
from homehub_mcp.models import (
    CatalogSnapshot,
    FoldersResponse,
    ListingContext,
    SearchResponse,
    ServerCatalogInfo,
    VideoListResponse,
    WireModel,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=WireModel)
Listener = Callable[[CatalogSnapshot], None]


def classify_validation_error(error: ValidationError) -> DecodeFailure:
    """Map a pydantic ValidationError onto one of the decode failure kinds."""
    details = error.errors()
    if not details:
        return DecodeFailure(DecodeErrorKind.CORRUPT_BODY, "Data corrupted in JSON response")
    first = details[0]
    field = ".".join(str(part) for part in first.get("loc", ()))
    err_type = first.get("type", "")
    if err_type == "json_invalid" or not field:
        return DecodeFailure(DecodeErrorKind.CORRUPT_BODY, f"Data corrupted in JSON: {first.get('msg', '')}")
    if err_type == "missing":
        return DecodeFailure(DecodeErrorKind.MISSING_FIELD, f"Missing key '{field}' in JSON response", field)
    if first.get("input", ...) is None:
        return DecodeFailure(DecodeErrorKind.VALUE_MISSING, f"Value not found for '{field}' in JSON", field)
    return DecodeFailure(
        DecodeErrorKind.TYPE_MISMATCH,
        f"Type mismatch for '{field}' in JSON: {first.get('msg', '')}",
        field,
    )


class CatalogClient:
    """
    REST client for one HomeHub server, plus the accumulated listing state.

    Page 1 of any listing or search replaces what is shown; later pages append.
    Failures never touch the data already in the snapshot, they only set
    snapshot.error (and last_failure with the classified exception).
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout or get_request_timeout())
        self._state = CatalogSnapshot()
        self._listeners: List[Listener] = []
        self.last_failure: Optional[CatalogError] = None

    async def __aenter__(self) -> "CatalogClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def snapshot(self) -> CatalogSnapshot:
        """A copy of the current state; mutating it has no effect on the client."""
        return self._state.copy()

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def error(self) -> Optional[str]:
        return self._state.error

    @property
    def server_info(self) -> Optional[ServerCatalogInfo]:
        return self._state.server_info

    def resolve_url(self, path: Optional[str]) -> Optional[str]:
        """Absolute URL for a server-relative media path such as "/stream/abc"."""
        if not path:
            return None
        return str(URL(self.base_url + "/").join(URL(path)))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self._state.copy()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception as e:
                logger.warning(f"Catalog listener failed: {e}")

    @contextmanager
    def _busy(self) -> Iterator[None]:
        self._state.is_loading = True
        self._state.error = None
        self.last_failure = None
        self._notify()
        try:
            yield
        finally:
            self._state.is_loading = False
            self._notify()

    def _fail(self, prefix: str, error: CatalogError) -> None:
        logger.error(f"{prefix}: {error}")
        self.last_failure = error
        self._state.error = f"{prefix}: {error}"

    # Requests

    def _url(self, path: str, query: Optional[Dict[str, str]] = None) -> URL:
        try:
            base = URL(self.base_url)
        except (TypeError, ValueError) as e:
            raise InvalidRequest(f"Invalid server URL {self.base_url!r}: {e}")
        if base.scheme not in ("http", "https") or not base.host:
            raise InvalidRequest(f"Invalid server URL {self.base_url!r}")
        url = URL(str(base).rstrip("/") + path, encoded=True)
        if query:
            # Percent-encode as a query component so "&", "=", "+" survive.
            encoded = "&".join(f"{k}={quote(str(v), safe='')}" for k, v in query.items())
            url = URL(f"{url}?{encoded}", encoded=True)
        return url

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _get(self, url: URL) -> bytes:
        session = self._get_session()
        logger.debug(f"GET {url}")
        try:
            async with session.get(url, timeout=self._timeout) as resp:
                body = await resp.read()
                logger.debug(f"Response {resp.status} from {url} ({len(body)} bytes)")
                if resp.status != 200:
                    raise HTTPStatusError(resp.status)
                return body
        except CatalogError:
            raise
        except asyncio.TimeoutError:
            raise TransportFailure(f"Request to {url} timed out")
        except (aiohttp.ClientError, OSError) as e:
            raise TransportFailure(str(e) or e.__class__.__name__)

    async def _get_model(self, url: URL, model: Type[M]) -> M:
        body = await self._get(url)
        try:
            return model.model_validate_json(body)
        except ValidationError as e:
            raise classify_validation_error(e)

    @staticmethod
    def _check_page(page: int) -> None:
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise InvalidRequest(f"Invalid page {page!r}")

    # Operations

    async def fetch_server_info(self) -> Optional[ServerCatalogInfo]:
        with self._busy():
            try:
                info = await self._get_model(self._url("/api/info"), ServerCatalogInfo)
            except HTTPStatusError as e:
                self._fail("Server connection failed", e)
                return None
            except CatalogError as e:
                self._fail("Failed to load server info", e)
                return None
            self._state.server_info = info
            logger.info(f"Server info loaded: {info.server.name} {info.server.version}")
            return info

    async def fetch_videos(self, page: int = 1, folder: Optional[str] = None) -> None:
        with self._busy():
            try:
                await self._load_videos(page, folder)
            except CatalogError as e:
                self._fail("Failed to load videos", e)

    async def _load_videos(self, page: int, folder: Optional[str]) -> None:
        self._check_page(page)
        query = {"format": "json", "page": str(page)}
        if not folder:
            folder = None
            url = self._url("/", query)
        else:
            url = self._url("/folder/" + quote(folder.strip("/"), safe="/"), query)
        response = await self._get_model(url, VideoListResponse)

        videos = list(response.videos) if page == 1 else self._state.videos + list(response.videos)
        self._state.videos = videos
        self._state.folders = list(response.folders)
        self._state.current_folder = response.current_folder
        self._state.page_state = response.pagination
        self._state.context = ListingContext(kind="videos", folder=folder)
        logger.debug(
            f"Loaded page {page} of {response.pagination.total_pages}: "
            f"{len(response.videos)} videos, {len(videos)} total"
        )

    async def fetch_folders(self) -> None:
        with self._busy():
            try:
                response = await self._get_model(self._url("/folders"), FoldersResponse)
            except CatalogError as e:
                self._fail("Failed to load folders", e)
                return
            self._state.folders = list(response.folders)
            logger.debug(f"Folders loaded: {len(response.folders)} (total: {response.total_folders})")

    async def search_videos(self, query: str, page: int = 1) -> None:
        with self._busy():
            if not query:
                self._state.videos = []
                self._state.folders = []
                self._state.page_state = None
                self._state.context = None
                return
            try:
                self._check_page(page)
                url = self._url("/search", {"format": "json", "q": query, "page": str(page)})
                response = await self._get_model(url, SearchResponse)
            except CatalogError as e:
                self._fail("Search failed", e)
                return

            results = response.results
            if page == 1:
                self._state.videos = list(results.videos)
                self._state.folders = list(results.folders)
            else:
                self._state.videos = self._state.videos + list(results.videos)
                self._state.folders = self._state.folders + list(results.folders)
            self._state.page_state = response.pagination
            self._state.context = ListingContext(kind="search", query=query)
            logger.debug(f"Search {query!r}: {len(results.videos)} videos, {len(results.folders)} folders")

    async def refresh_cache(self) -> None:
        with self._busy():
            try:
                await self._get(self._url("/refresh"))
            except CatalogError as e:
                self._fail("Cache refresh failed", e)
                return
            try:
                await self._load_videos(1, None)
            except CatalogError as e:
                self._fail("Failed to load videos", e)

    async def load_more(self) -> bool:
        """Fetch the next page of whatever is listed. Returns False if there is nothing more."""
        state = self._state
        if state.page_state is None or state.context is None or not state.page_state.has_next:
            return False
        next_page = state.page_state.current_page + 1
        if state.context.kind == "search":
            await self.search_videos(state.context.query, page=next_page)
        else:
            await self.fetch_videos(page=next_page, folder=state.context.folder)
        return self._state.error is None

    def clear_data(self) -> None:
        self._state.videos = []
        self._state.folders = []
        self._state.current_folder = ""
        self._state.page_state = None
        self._state.error = None
        self._state.context = None
        self.last_failure = None
        self._notify()
