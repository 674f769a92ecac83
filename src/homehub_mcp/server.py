import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

from homehub_mcp.catalog import CatalogClient
from homehub_mcp.config import DEFAULT_PORT, DEFAULT_SERVER_NAME, get_host, get_log_level, get_state_file
from homehub_mcp.discovery import AdvertisementScanner, ScannerState, ZeroconfScanner
from homehub_mcp.formatting import format_duration, format_file_size
from homehub_mcp.models import ServerIdentity
from homehub_mcp.probe import ConnectionProbe, parse_manual_entry
from homehub_mcp.registry import JsonFileStore, ServerRegistry

# Initialize FastMCP server
mcp = FastMCP("homehub")

logger = logging.getLogger(__name__)

_registry: Optional[ServerRegistry] = None
_scanner: Optional[AdvertisementScanner] = None
_follow_task: Optional[asyncio.Task] = None

# The connected server and its catalog client; one at a time.
_active: Optional[CatalogClient] = None
_active_server: Optional[ServerIdentity] = None


def get_registry() -> ServerRegistry:
    global _registry
    if _registry is None:
        _registry = ServerRegistry(JsonFileStore(get_state_file()))
        _registry.load()
    return _registry


def get_scanner() -> AdvertisementScanner:
    global _scanner
    if _scanner is None:
        _scanner = ZeroconfScanner()
    return _scanner


def _servers_json(servers) -> str:
    return json.dumps([dict(s.to_dict(), id=s.key) for s in servers])


def _listing(client: CatalogClient) -> Dict[str, Any]:
    data = client.snapshot.to_dict()
    for video in data["videos"]:
        video["duration_display"] = format_duration(video.get("duration"))
        video["size_display"] = format_file_size(video.get("size"))
        video["absolute_stream_url"] = client.resolve_url(video.get("stream_url"))
        video["absolute_thumbnail_url"] = client.resolve_url(video.get("thumbnail"))
    return data


async def _connect(identity: ServerIdentity) -> Dict[str, Any]:
    global _active, _active_server
    probe = ConnectionProbe(get_registry())
    result = await probe.probe(identity)
    if not result.ok:
        raise RuntimeError(f"Connection failed: {result.error}")

    await _close_active()
    _active = CatalogClient(identity.base_url)
    _active_server = identity
    logger.info(f"Connected to {identity.name} ({identity.key})")
    return {
        "server": dict(identity.to_dict(), id=identity.key),
        "info": result.info.model_dump() if result.info else None,
    }


async def _close_active() -> None:
    global _active, _active_server
    if _active is not None:
        await _active.close()
    _active = None
    _active_server = None


async def _get_client() -> CatalogClient:
    if _active is not None:
        return _active
    host = get_host()
    if not host:
        raise ValueError("Not connected. Use connect_server or set the HOMEHUB_HOST environment variable")
    await _connect(parse_manual_entry(host))
    return _active


def _raise_on_error(client: CatalogClient) -> None:
    if client.error:
        raise RuntimeError(client.error)


@mcp.tool()
async def discover_servers(timeout: float = 3) -> str:
    """
    Browse the local network for HomeHub servers.
    Discovery keeps running in the background until stop_discovery is called.
    Returns a JSON list of discovered servers.

    Args:
        timeout: Seconds to wait for advertisements before answering.
    """
    global _follow_task
    registry = get_registry()
    scanner = get_scanner()

    registry.reset()
    await scanner.start()
    if scanner.state == ScannerState.FAILED:
        raise RuntimeError(f"Discovery failed: {scanner.last_error}")

    if _follow_task is not None and not _follow_task.done():
        _follow_task.cancel()
    _follow_task = asyncio.create_task(registry.follow(scanner.events()))

    await asyncio.sleep(timeout)
    return _servers_json(registry.discovered)


@mcp.tool()
async def stop_discovery() -> str:
    """Stop browsing for HomeHub servers."""
    await get_scanner().stop()
    return "Discovery stopped"


@mcp.tool()
async def list_recent_servers() -> str:
    """Return the recently connected servers, most recent first, as JSON."""
    return _servers_json(get_registry().recents)


@mcp.tool()
async def connect_server(host: str, port: int = DEFAULT_PORT, name: str = "") -> str:
    """
    Check that a HomeHub server is reachable and make it the active server.

    Args:
        host: IP address or hostname of the server.
        port: HTTP port of the server.
        name: Display name (e.g. from discover_servers).
    """
    identity = ServerIdentity(name=name or DEFAULT_SERVER_NAME, host=host, port=port)
    return json.dumps(await _connect(identity))


@mcp.tool()
async def connect_manual_server(address: str) -> str:
    """
    Connect to a server typed by hand, e.g. 'http://192.168.1.50:9000' or '10.0.0.5'.
    The port defaults to 8080.

    Args:
        address: '[http://]host[:port]'
    """
    return json.dumps(await _connect(parse_manual_entry(address)))


@mcp.tool()
async def disconnect() -> str:
    """Forget the active server and close its connection."""
    name = _active_server.name if _active_server else None
    await _close_active()
    return f"Disconnected from {name}" if name else "Not connected"


@mcp.tool()
async def get_server_info() -> str:
    """Fetch the active server's name, version, endpoints and discovery settings."""
    client = await _get_client()
    info = await client.fetch_server_info()
    _raise_on_error(client)
    return info.model_dump_json()


@mcp.tool()
async def list_videos(page: int = 1, folder: str = "") -> str:
    """
    List videos on the active server. Page 1 starts a fresh listing, later pages
    are appended to what was loaded before.

    Args:
        page: 1-based page number.
        folder: Server-relative folder path; empty for all videos.
    """
    client = await _get_client()
    await client.fetch_videos(page=page, folder=folder or None)
    _raise_on_error(client)
    return json.dumps(_listing(client))


@mcp.tool()
async def load_more() -> str:
    """Load the next page of the current listing or search."""
    client = await _get_client()
    await client.load_more()
    _raise_on_error(client)
    return json.dumps(_listing(client))


@mcp.tool()
async def list_folders() -> str:
    """List every folder on the active server."""
    client = await _get_client()
    await client.fetch_folders()
    _raise_on_error(client)
    return json.dumps([f.model_dump() for f in client.snapshot.folders])


@mcp.tool()
async def search_videos(query: str, page: int = 1) -> str:
    """
    Search videos and folders by name. An empty query clears the results.

    Args:
        query: Search text.
        page: 1-based page number.
    """
    client = await _get_client()
    await client.search_videos(query, page=page)
    _raise_on_error(client)
    return json.dumps(_listing(client))


@mcp.tool()
async def refresh_cache() -> str:
    """Ask the server to rescan its library, then reload the first page of videos."""
    client = await _get_client()
    await client.refresh_cache()
    _raise_on_error(client)
    return json.dumps(_listing(client))


@mcp.tool()
async def get_listing() -> str:
    """Return what is currently loaded without contacting the server."""
    client = await _get_client()
    return json.dumps(_listing(client))


def main():
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    mcp.run()


if __name__ == "__main__":
    main()
