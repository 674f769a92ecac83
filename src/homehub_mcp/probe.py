import logging
from dataclasses import dataclass
from typing import Callable, Optional

from homehub_mcp.catalog import CatalogClient
from homehub_mcp.config import DEFAULT_PORT, MANUAL_SERVER_NAME
from homehub_mcp.errors import CatalogError, InvalidRequest
from homehub_mcp.models import ServerCatalogInfo, ServerIdentity
from homehub_mcp.registry import ServerRegistry

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], CatalogClient]


def parse_manual_entry(text: str, default_port: int = DEFAULT_PORT) -> ServerIdentity:
    """
    Parse a user-typed "[http(s)://]host[:port]" into a ServerIdentity.
    An https:// prefix is kept as the scheme; anything else is plain http.

    The port comes after the last colon; if it is missing or not a number the
    default port is used.
    """
    value = (text or "").strip()
    scheme = "http"
    for prefix in ("http", "https"):
        if value.lower().startswith(prefix + "://"):
            scheme = prefix
            value = value[len(prefix) + 3:]
            break
    value = value.rstrip("/")
    if not value:
        raise InvalidRequest("Server address is empty")

    host, sep, port_text = value.rpartition(":")
    if not sep:
        host, port = value, default_port
    elif port_text.isdigit():
        port = int(port_text)
    else:
        port = default_port
    if not host:
        raise InvalidRequest(f"Invalid server address {text!r}")
    return ServerIdentity(name=MANUAL_SERVER_NAME, host=host, port=port, scheme=scheme)


@dataclass
class ProbeResult:
    identity: ServerIdentity
    info: Optional[ServerCatalogInfo] = None
    error: Optional[str] = None
    failure: Optional[CatalogError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ConnectionProbe:
    """One round trip to /api/info before committing to a server."""

    def __init__(self, registry: ServerRegistry, client_factory: Optional[ClientFactory] = None):
        self.registry = registry
        self.client_factory = client_factory or CatalogClient

    async def probe(self, identity: ServerIdentity) -> ProbeResult:
        logger.info(f"Probing {identity.name} at {identity.base_url}")
        client = self.client_factory(identity.base_url)
        try:
            info = await client.fetch_server_info()
            error = client.error
            failure = client.last_failure
        finally:
            await client.close()

        if error is not None:
            logger.warning(f"Connection to {identity.key} failed: {error}")
            return ProbeResult(identity=identity, error=error, failure=failure)

        self.registry.promote(identity)
        return ProbeResult(identity=identity, info=info)

    async def probe_manual(self, text: str) -> ProbeResult:
        identity = parse_manual_entry(text, self.registry.default_port)
        return await self.probe(identity)
