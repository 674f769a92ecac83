import json
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from homehub_mcp.registry import MemoryStore, ServerRegistry


def make_video(vid: str, folder: str = "", **overrides) -> dict:
    item = {
        "id": vid,
        "name": f"Video {vid}",
        "path": f"{folder}/{vid}.mp4".lstrip("/"),
        "thumbnail_url": f"/thumbnail/{vid}.jpg",
        "duration": "95",
        "size": 1500000,
        "folder": folder,
        "stream_url": f"/stream/{vid}",
        "modified_time": "2025-06-01T10:00:00",
    }
    item.update(overrides)
    return item


def make_folder(path: str, name: Optional[str] = None) -> dict:
    return {"name": path.rsplit("/", 1)[-1] if name is None else name, "path": path}


def pagination(page: int = 1, total_pages: int = 1, per_page: int = 20, total: int = 0) -> dict:
    return {"current_page": page, "total_pages": total_pages, "per_page": per_page, "total_videos": total}


def listing(videos, folders=(), current_folder="", page=1, total_pages=1) -> dict:
    return {
        "videos": list(videos),
        "folders": list(folders),
        "current_folder": current_folder,
        "pagination": pagination(page, total_pages, total=len(videos)),
    }


def search_result(query, videos, folders=(), page=1, total_pages=1) -> dict:
    return {
        "query": query,
        "results": {"videos": list(videos), "folders": list(folders)},
        "pagination": pagination(page, total_pages, total=len(videos)),
        "total_results": len(videos) + len(folders),
    }


SERVER_INFO = {
    "server": {
        "name": "Living Room",
        "version": "1.2.0",
        "host": "0.0.0.0",
        "port": 8080,
        "video_extensions": [".mp4", ".mkv"],
        "videos_per_page": 20,
    },
    "endpoints": {
        "folders": "/folders",
        "refresh_cache": "/refresh",
        "search": "/search",
        "videos": "/",
    },
    "discovery": {"bonjour_service": "Living Room", "service_type": "_homehub._tcp"},
}


class FakeHomeHub:
    """In-process HomeHub REST server with canned responses."""

    def __init__(self):
        self.info: dict = SERVER_INFO
        self.listings: Dict[Tuple[str, int], dict] = {}
        self.searches: Dict[Tuple[str, int], dict] = {}
        self.folders: dict = {"folders": [], "total_folders": 0}
        # path -> status code or raw body that replaces the canned JSON
        self.statuses: Dict[str, int] = {}
        self.raw: Dict[str, bytes] = {}
        self.requests: List[str] = []
        self.queries: List[str] = []
        self.base_url = ""

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/info", self._info)
        app.router.add_get("/", self._listing)
        app.router.add_get("/folder/{path:.*}", self._listing)
        app.router.add_get("/folders", self._folders)
        app.router.add_get("/search", self._search)
        app.router.add_get("/refresh", self._refresh)
        return app

    def _respond(self, request: web.Request, body) -> web.Response:
        self.requests.append(request.path)
        status = self.statuses.get(request.path)
        if status is not None:
            return web.Response(status=status, text="nope")
        if request.path in self.raw:
            return web.Response(body=self.raw[request.path], content_type="application/json")
        if body is None:
            return web.Response(status=404, text="not found")
        return web.Response(text=json.dumps(body), content_type="application/json")

    async def _info(self, request):
        return self._respond(request, self.info)

    async def _listing(self, request):
        folder = request.match_info.get("path", "")
        page = int(request.query.get("page", "1"))
        return self._respond(request, self.listings.get((folder, page)))

    async def _folders(self, request):
        return self._respond(request, self.folders)

    async def _search(self, request):
        query = request.query.get("q", "")
        self.queries.append(query)
        page = int(request.query.get("page", "1"))
        return self._respond(request, self.searches.get((query, page)))

    async def _refresh(self, request):
        return self._respond(request, {"status": "ok"})


@pytest_asyncio.fixture
async def homehub():
    fake = FakeHomeHub()
    server = TestServer(fake.app())
    await server.start_server()
    fake.base_url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest.fixture
def registry():
    return ServerRegistry(MemoryStore())
