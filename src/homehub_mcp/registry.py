import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from homehub_mcp.config import DEFAULT_PORT, DEFAULT_SERVER_NAME, RECENTS_CAPACITY, RECENTS_KEY
from homehub_mcp.discovery import EventKind, RawAdvertisement, ScannerEvent
from homehub_mcp.models import ServerIdentity

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class KeyValueStore(ABC):
    """Small application-scoped storage for client state."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...


class MemoryStore(KeyValueStore):
    def __init__(self, data: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(data or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class JsonFileStore(KeyValueStore):
    """Keeps every key in one JSON object on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> Dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable state file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.path)


class ServerRegistry:
    """
    Deduplicated set of discovered servers plus the bounded recents list.

    Entries are keyed by host:port. Removal events are informational only: a
    server stays listed for the rest of the browse session once it was seen.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        capacity: int = RECENTS_CAPACITY,
        default_port: int = DEFAULT_PORT,
    ):
        self.store = store or MemoryStore()
        self.capacity = capacity
        self.default_port = default_port
        self._discovered: Dict[str, ServerIdentity] = {}
        self._recents: List[ServerIdentity] = []
        self._listeners: List[Listener] = []

    @property
    def discovered(self) -> List[ServerIdentity]:
        return list(self._discovered.values())

    @property
    def recents(self) -> List[ServerIdentity]:
        return list(self._recents)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener after every change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.warning(f"Registry listener failed: {e}")

    def identity_for(self, raw: RawAdvertisement) -> ServerIdentity:
        props = raw.properties
        port = raw.port if raw.port and raw.port > 0 else self.default_port
        txt_port = props.get("port", "").strip()
        if txt_port.isdigit():
            port = int(txt_port)
        name = props.get("name") or raw.name or DEFAULT_SERVER_NAME
        return ServerIdentity(name=name, host=raw.host, port=port)

    def on_added(self, raw: RawAdvertisement) -> ServerIdentity:
        identity = self.identity_for(raw)
        existing = self._discovered.get(identity.key)
        if existing is None:
            logger.info(f"Discovered {identity.name} at {identity.key}")
            self._discovered[identity.key] = identity
            self._notify()
            return identity
        if existing.name != identity.name:
            logger.debug(f"Renaming {identity.key}: {existing.name!r} -> {identity.name!r}")
            # dict assignment keeps first-seen ordering
            self._discovered[identity.key] = identity
            self._notify()
            return identity
        return existing

    def on_removed(self, raw: RawAdvertisement) -> None:
        logger.debug(f"Advertisement removed for {raw.name} ({raw.host}:{raw.port}); keeping entry")

    def handle_event(self, event: ScannerEvent) -> None:
        if event.kind is EventKind.ADDED:
            self.on_added(event.advertisement)
        elif event.kind is EventKind.REMOVED:
            self.on_removed(event.advertisement)

    async def follow(self, events: AsyncIterator[ScannerEvent]) -> None:
        """Apply scanner events in the order they arrive until the stream ends."""
        async for event in events:
            self.handle_event(event)

    def reset(self) -> None:
        if self._discovered:
            self._discovered.clear()
            self._notify()

    def promote(self, identity: ServerIdentity) -> None:
        """Move identity to the front of recents, evicting the oldest past capacity."""
        recents = [s for s in self._recents if s != identity]
        recents.insert(0, identity)
        self._recents = recents[: self.capacity]
        self._save()
        self._notify()

    def load(self) -> List[ServerIdentity]:
        raw = self.store.get(RECENTS_KEY)
        self._recents = self._decode_recents(raw)
        self._notify()
        return self.recents

    def _decode_recents(self, raw: Optional[str]) -> List[ServerIdentity]:
        if not raw:
            return []
        try:
            records = json.loads(raw)
            if not isinstance(records, list):
                raise ValueError("recents must be a list")
            servers = [ServerIdentity.from_dict(r) for r in records]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring corrupt recent servers: {e}")
            return []
        unique: List[ServerIdentity] = []
        for server in servers:
            if server not in unique:
                unique.append(server)
        return unique[: self.capacity]

    def _save(self) -> None:
        payload = json.dumps([s.to_dict() for s in self._recents])
        try:
            self.store.set(RECENTS_KEY, payload)
        except OSError as e:
            logger.error(f"Failed to save recent servers: {e}")
