import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, Mapping, Optional, Set, Union

from zeroconf import IPVersion, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from homehub_mcp.config import SERVICE_TYPE

logger = logging.getLogger(__name__)

TxtValue = Union[str, bytes, None]


class ScannerState(str, Enum):
    IDLE = "idle"
    BROWSING = "browsing"
    READY = "ready"
    FAILED = "failed"


class EventKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class RawAdvertisement:
    name: str
    host: str
    port: int = 0
    properties: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ScannerEvent:
    kind: EventKind
    advertisement: RawAdvertisement


def decode_txt_record(properties: Mapping[Union[str, bytes], TxtValue]) -> Dict[str, str]:
    """
    Decode a TXT record into plain strings.
    Empty entries and undecodable bytes become "" so one bad peer never breaks discovery.
    """
    decoded: Dict[str, str] = {}
    for key, value in properties.items():
        if isinstance(key, bytes):
            try:
                key = key.decode("utf-8")
            except UnicodeDecodeError:
                logger.debug(f"Skipping TXT entry with undecodable key {key!r}")
                continue
        if value is None:
            decoded[key] = ""
        elif isinstance(value, bytes):
            try:
                decoded[key] = value.decode("utf-8")
            except UnicodeDecodeError:
                decoded[key] = ""
        else:
            decoded[key] = str(value)
    return decoded


def instance_name(service_name: str, service_type: str = SERVICE_TYPE) -> str:
    """'Den TV._homehub._tcp.local.' -> 'Den TV'"""
    suffix = "." + service_type
    if service_name.endswith(suffix):
        return service_name[: -len(suffix)]
    return service_name.rstrip(".")


class AdvertisementScanner(ABC):
    """
    Browses the local network for HomeHub advertisements.
    Concrete adapters push ScannerEvents through _emit(); consumers read events().
    """

    def __init__(self):
        self.state = ScannerState.IDLE
        self.last_error: Optional[str] = None
        self._queue: "asyncio.Queue[Optional[ScannerEvent]]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_discovering(self) -> bool:
        return self.state in (ScannerState.BROWSING, ScannerState.READY)

    async def start(self) -> None:
        """(Re)start browsing. Failures are logged and leave the scanner FAILED."""
        await self.stop()
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self.last_error = None
        self.state = ScannerState.BROWSING
        try:
            await self._open()
        except Exception as e:
            logger.error(f"HomeHub discovery failed: {e}")
            self.last_error = str(e)
            self.state = ScannerState.FAILED
            await self._close()
            return
        self.state = ScannerState.READY
        logger.info("HomeHub discovery started")

    async def stop(self) -> None:
        if self.state == ScannerState.IDLE:
            return
        await self._close()
        self.state = ScannerState.IDLE
        # Wake any consumer blocked on events()
        self._queue.put_nowait(None)
        logger.info("HomeHub discovery stopped")

    async def events(self) -> AsyncIterator[ScannerEvent]:
        """Yield events in receipt order until the scanner stops."""
        queue = self._queue
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    def _emit(self, kind: EventKind, advertisement: RawAdvertisement) -> None:
        event = ScannerEvent(kind, advertisement)
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._queue.put_nowait(event)
        else:
            loop.call_soon_threadsafe(self._queue.put_nowait, event)

    @abstractmethod
    async def _open(self) -> None:
        ...

    @abstractmethod
    async def _close(self) -> None:
        ...


class ZeroconfScanner(AdvertisementScanner):
    """mDNS/DNS-SD adapter built on python-zeroconf's asyncio API."""

    def __init__(self, service_type: str = SERVICE_TYPE, resolve_timeout: float = 3.0):
        super().__init__()
        self.service_type = service_type
        self.resolve_timeout = resolve_timeout
        self._aiozc: Optional[AsyncZeroconf] = None
        self._browser: Optional[AsyncServiceBrowser] = None
        self._tasks: Set[asyncio.Task] = set()
        self._seen: Dict[str, RawAdvertisement] = {}

    async def _open(self) -> None:
        self._seen = {}
        self._aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        self._browser = AsyncServiceBrowser(
            self._aiozc.zeroconf,
            [self.service_type],
            handlers=[self._on_service_state_change],
        )

    async def _close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self._browser is not None:
            try:
                await self._browser.async_cancel()
            except Exception as e:
                logger.debug(f"Error cancelling browser: {e}")
            self._browser = None
        if self._aiozc is not None:
            try:
                await self._aiozc.async_close()
            except Exception as e:
                logger.debug(f"Error closing zeroconf: {e}")
            self._aiozc = None
        self._seen = {}

    def _on_service_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if state_change in (ServiceStateChange.Added, ServiceStateChange.Updated):
            loop = self._loop
            if loop is None:
                return
            loop.call_soon_threadsafe(self._schedule_resolve, service_type, name)
        elif state_change is ServiceStateChange.Removed:
            known = self._seen.pop(name, None)
            if known is not None:
                logger.debug(f"HomeHub service went away: {name}")
                self._emit(EventKind.REMOVED, known)

    def _schedule_resolve(self, service_type: str, name: str) -> None:
        task = asyncio.ensure_future(self._resolve(service_type, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, service_type: str, name: str) -> None:
        if self._aiozc is None:
            return
        info = AsyncServiceInfo(service_type, name)
        try:
            resolved = await info.async_request(self._aiozc.zeroconf, timeout=self.resolve_timeout * 1000)
        except Exception as e:
            logger.warning(f"Failed to resolve service {name}: {e}")
            return
        if not resolved:
            logger.debug(f"Service {name} did not resolve in time")
            return
        advertisement = self._to_advertisement(info, service_type)
        if advertisement is None:
            return
        logger.info(f"Found HomeHub service: {advertisement.name} at {advertisement.host}:{advertisement.port}")
        self._seen[name] = advertisement
        self._emit(EventKind.ADDED, advertisement)

    def _to_advertisement(self, info: AsyncServiceInfo, service_type: str) -> Optional[RawAdvertisement]:
        addresses = info.parsed_addresses(IPVersion.V4Only)
        if addresses:
            host = addresses[0]
        elif info.server:
            host = info.server.rstrip(".")
        else:
            logger.warning(f"No address for service {info.name}")
            return None
        return RawAdvertisement(
            name=instance_name(info.name, service_type),
            host=host,
            port=info.port or 0,
            properties=decode_txt_record(info.properties or {}),
        )
