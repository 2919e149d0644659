"""Management of event streams and the listeners attached to them."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Callable, Protocol

from txmanager.errors import ErrorCode, TMError

log = logging.getLogger(__name__)

STARTUP_PAGINATION_LIMIT = 25

_LIMIT = re.compile(r"[+-]?\d+")
_ulid_lock = threading.Lock()
_last_ulid = 0


def _new_ulid() -> uuid.UUID:
    """Return a time-ordered, strictly increasing identifier."""
    global _last_ulid
    with _ulid_lock:
        millis = time.time_ns() // 1_000_000
        value = (millis << 80) | int.from_bytes(os.urandom(10), "big")
        if value <= _last_ulid:
            value = _last_ulid + 1
        _last_ulid = value
    return uuid.UUID(int=value)


class SortDirection(IntEnum):
    """Order in which persisted records are listed."""

    ASCENDING = 0
    DESCENDING = 1


class StreamStatus(str, Enum):
    """Runtime state of an event stream."""

    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class EventStream:
    """The definition of an event stream."""

    id: uuid.UUID | None = None
    name: str | None = None
    created: datetime | None = None
    updated: datetime | None = None
    suspended: bool | None = None
    type: str | None = None


@dataclass
class Listener:
    """The definition of an event listener on a stream."""

    id: uuid.UUID | None = None
    name: str | None = None
    stream_id: uuid.UUID | None = None
    created: datetime | None = None
    options: str | None = None
    eth_compat_methods: str | None = None
    filters: str | None = None
    from_block: str | None = None


@dataclass
class EventStreamWithStatus:
    """A stream definition together with its runtime status."""

    stream: EventStream
    status: StreamStatus


@dataclass
class ListenerWithStatus:
    """A listener definition together with its high-water mark."""

    listener: Listener
    checkpoint: Any = None
    catchup: bool = False


class Persistence(Protocol):
    """Storage for streams, listeners and transactions."""

    def list_streams(self, after: uuid.UUID | None, limit: int,
                     direction: SortDirection) -> list[EventStream]:
        """List stream definitions after the given ID; a limit of 0 means no limit."""

    def list_listeners(self, after: uuid.UUID | None, limit: int,
                       direction: SortDirection) -> list[Listener]:
        """List listener definitions after the given ID."""

    def list_stream_listeners(self, after: uuid.UUID | None, limit: int,
                              direction: SortDirection, stream_id: uuid.UUID) -> list[Listener]:
        """List the listeners of one stream after the given ID."""

    def get_listener(self, listener_id: uuid.UUID) -> Listener | None:
        """Return a listener, or None when it does not exist."""

    def write_stream(self, spec: EventStream) -> None:
        """Insert or replace a stream definition."""

    def write_listener(self, spec: Listener) -> None:
        """Insert or replace a listener definition."""

    def delete_stream(self, stream_id: uuid.UUID) -> None:
        """Remove a stream definition."""

    def delete_listener(self, listener_id: uuid.UUID) -> None:
        """Remove a listener definition."""

    def get_transaction_by_id(self, tx_id: str) -> Any:
        """Return a managed transaction, or None when it does not exist."""

    def list_transactions_by_nonce(self, signer: str, after_nonce: int | None, limit: int,
                                   direction: SortDirection) -> list:
        """List one signer's transactions ordered by nonce."""

    def list_transactions_pending(self, after_sequence: uuid.UUID | None, limit: int,
                                  direction: SortDirection) -> list:
        """List pending transactions ordered by their pending sequence."""

    def list_transactions_by_create_time(self, after_tx: Any, limit: int,
                                         direction: SortDirection) -> list:
        """List all transactions ordered by creation time."""


class Stream(ABC):
    """A running event stream."""

    @abstractmethod
    def spec(self) -> EventStream:
        """The current definition of the stream."""

    @abstractmethod
    def status(self) -> StreamStatus:
        """The current runtime status."""

    @abstractmethod
    def start(self) -> None:
        """Start delivering events."""

    @abstractmethod
    def stop(self) -> None:
        """Stop delivering events."""

    @abstractmethod
    def delete(self) -> None:
        """Stop the stream and release everything it holds."""

    @abstractmethod
    def update_spec(self, updates: EventStream) -> None:
        """Apply changes to the definition, validating them."""

    @abstractmethod
    def add_or_update_listener(self, listener_id: uuid.UUID, updates: Listener,
                               reset: bool) -> Listener:
        """Add or change a listener and return its full definition."""

    @abstractmethod
    def remove_listener(self, listener_id: uuid.UUID) -> None:
        """Remove a listener from the running stream."""


StreamFactory = Callable[[EventStream, Any, Persistence, "list[Listener]"], Stream]


def parse_uuid(text: str) -> uuid.UUID:
    """Parse a UUID, raising TMError when it is malformed."""
    try:
        return uuid.UUID(text)
    except (ValueError, TypeError, AttributeError) as err:
        raise TMError(ErrorCode.INVALID_UUID, text) from err


def parse_limit(limit_str: str) -> int:
    """Parse a page limit; an empty string means no limit (0)."""
    if not limit_str:
        return 0
    if not _LIMIT.fullmatch(limit_str):
        raise TMError(ErrorCode.INVALID_LIMIT, limit_str, "not an integer")
    return int(limit_str)


def parse_after_and_limit(after_str: str, limit_str: str) -> tuple[uuid.UUID | None, int]:
    """Parse the pagination options of a listing request."""
    limit = parse_limit(limit_str)
    after = parse_uuid(after_str) if after_str else None
    return after, limit


def merge_eth_compat_methods(listener: Listener) -> None:
    """Move the legacy ``methods`` field of a listener into its options."""
    if listener.eth_compat_methods is None:
        return
    options = json.loads(listener.options or "{}")
    if not isinstance(options, dict):
        raise ValueError("listener options must be a JSON object")
    methods = json.loads(listener.eth_compat_methods)
    if not isinstance(methods, list):
        raise ValueError("listener methods must be a JSON array")
    options["methods"] = methods
    listener.options = json.dumps(options, sort_keys=True, separators=(",", ":"))
    listener.eth_compat_methods = None


class StreamManager:
    """Keeps runtime event streams in step with their stored definitions."""

    def __init__(self, persistence: Persistence, connector: Any,
                 stream_factory: StreamFactory) -> None:
        self._persistence = persistence
        self._connector = connector
        self._stream_factory = stream_factory
        self._lock = threading.Lock()
        self._event_streams: dict[uuid.UUID, Stream] = {}
        self._streams_by_name: dict[str, uuid.UUID] = {}

    @property
    def streams_by_name(self) -> dict[str, uuid.UUID]:
        """A snapshot of the reserved stream names."""
        with self._lock:
            return dict(self._streams_by_name)

    def _lookup(self, stream_id: uuid.UUID | None) -> Stream | None:
        if stream_id is None:
            return None
        with self._lock:
            return self._event_streams.get(stream_id)

    def restore_streams(self) -> None:
        """Load every stored stream with its listeners, starting those not suspended."""
        after = None
        while True:
            definitions = self._persistence.list_streams(
                after, STARTUP_PAGINATION_LIMIT, SortDirection.ASCENDING)
            if not definitions:
                break
            for definition in definitions:
                after = definition.id
                listeners = self._persistence.list_stream_listeners(
                    None, 0, SortDirection.ASCENDING, definition.id)
                if self._lookup(definition.id) is not None:
                    continue
                closeout = self.reserve_stream_name(definition.name or "", definition.id)
                succeeded = False
                try:
                    stream = self.add_runtime_stream(definition, listeners)
                    if not definition.suspended:
                        stream.start()
                    succeeded = True
                finally:
                    closeout(succeeded)

    def delete_all_stream_listeners(self, stream_id: uuid.UUID) -> None:
        """Delete every stored listener of a stream, a page at a time."""
        after = None
        while True:
            definitions = self._persistence.list_stream_listeners(
                after, STARTUP_PAGINATION_LIMIT, SortDirection.ASCENDING, stream_id)
            if not definitions:
                break
            for definition in definitions:
                after = definition.id
                self._persistence.delete_listener(definition.id)

    def add_runtime_stream(self, definition: EventStream,
                           listeners: list[Listener] | None) -> Stream:
        """Build a runtime stream and register it under its ID."""
        stream = self._stream_factory(definition, self._connector, self._persistence,
                                      list(listeners or []))
        spec = stream.spec()
        with self._lock:
            self._event_streams[spec.id] = stream
        return stream

    def delete_stream(self, id_str: str) -> None:
        stream_id = parse_uuid(id_str)
        with self._lock:
            stream = self._event_streams.pop(stream_id, None)
            if stream is not None:
                self._streams_by_name.pop(stream.spec().name, None)
        self.delete_all_stream_listeners(stream_id)
        self._persistence.delete_stream(stream_id)
        if stream is not None:
            stream.delete()

    def reserve_stream_name(self, name: str,
                            stream_id: uuid.UUID) -> Callable[[bool], None]:
        """Reserve ``name`` for a stream; call the result with the outcome to settle it."""
        with self._lock:
            current = self._event_streams.get(stream_id)
            old_name = (current.spec().name or "") if current is not None else ""
            existing = self._streams_by_name.get(name)
            if existing is not None and existing != stream_id:
                raise TMError(ErrorCode.DUPLICATE_STREAM_NAME, name, existing)
            self._streams_by_name[name] = stream_id

        def closeout(succeeded: bool) -> None:
            with self._lock:
                if not succeeded and existing is None:
                    self._streams_by_name.pop(name, None)
                elif succeeded and old_name != name:
                    self._streams_by_name.pop(old_name, None)

        return closeout

    def create_and_store_new_stream(self, definition: EventStream) -> EventStream:
        definition.id = _new_ulid()
        definition.created = None
        if not definition.name:
            raise TMError(ErrorCode.MISSING_NAME)
        closeout = self.reserve_stream_name(definition.name, definition.id)
        stored = False
        try:
            stream = self.add_runtime_stream(definition, None)
            spec = stream.spec()
            try:
                self._persistence.write_stream(spec)
            except Exception:
                with self._lock:
                    self._event_streams.pop(definition.id, None)
                try:
                    stream.delete()
                except Exception as cleanup_err:
                    log.info("Cleaned up runtime stream after write failed (err?=%s)", cleanup_err)
                raise
            stored = True
            if not spec.suspended:
                stream.start()
            return spec
        finally:
            closeout(stored)

    def create_and_store_new_stream_listener(self, id_str: str, definition: Listener) -> Listener:
        stream_id = parse_uuid(id_str)
        definition.stream_id = stream_id
        return self.create_and_store_new_listener(definition)

    def create_and_store_new_listener(self, definition: Listener) -> Listener:
        return self.create_or_update_listener(_new_ulid(), definition, False)

    def update_existing_listener(self, stream_id_str: str, listener_id_str: str,
                                 updates: Listener, reset: bool) -> Listener:
        existing = self.get_listener_spec(stream_id_str, listener_id_str)
        updates.stream_id = existing.stream_id
        return self.create_or_update_listener(existing.id, updates, reset)

    def create_or_update_listener(self, listener_id: uuid.UUID, new_or_updates: Listener,
                                  reset: bool) -> Listener:
        merge_eth_compat_methods(new_or_updates)
        stream = self._lookup(new_or_updates.stream_id)
        if stream is None:
            raise TMError(ErrorCode.STREAM_NOT_FOUND, new_or_updates.stream_id)
        spec = stream.add_or_update_listener(listener_id, new_or_updates, reset)
        try:
            self._persistence.write_listener(spec)
        except Exception:
            try:
                stream.remove_listener(spec.id)
            except Exception as cleanup_err:
                log.info("Cleaned up runtime listener after write failed (err?=%s)", cleanup_err)
            raise
        return spec

    def delete_listener(self, stream_id_str: str, listener_id_str: str) -> None:
        spec = self.get_listener_spec(stream_id_str, listener_id_str)
        stream = self._lookup(spec.stream_id)
        if stream is None:
            raise TMError(ErrorCode.STREAM_NOT_FOUND, spec.stream_id)
        stream.remove_listener(spec.id)
        self._persistence.delete_listener(spec.id)

    def update_stream(self, id_str: str, updates: EventStream) -> EventStream:
        stream_id = parse_uuid(id_str)
        stream = self._lookup(stream_id)
        if stream is None:
            raise TMError(ErrorCode.STREAM_NOT_FOUND, stream_id)
        name_changed = False
        closeout = self.reserve_stream_name(updates.name, stream_id) if updates.name else None
        try:
            stream.update_spec(updates)
            spec = stream.spec()
            self._persistence.write_stream(spec)
            name_changed = True
            if spec.suspended and stream.status() != StreamStatus.STOPPED:
                stream.stop()
            elif not spec.suspended and stream.status() != StreamStatus.STARTED:
                stream.start()
            return spec
        finally:
            if closeout is not None:
                closeout(name_changed)

    def get_stream(self, id_str: str) -> EventStreamWithStatus:
        stream_id = parse_uuid(id_str)
        stream = self._lookup(stream_id)
        if stream is None:
            raise TMError(ErrorCode.STREAM_NOT_FOUND, id_str)
        return EventStreamWithStatus(stream=replace(stream.spec()), status=stream.status())

    def get_streams(self, after_str: str, limit_str: str) -> list[EventStream]:
        after, limit = parse_after_and_limit(after_str, limit_str)
        return self._persistence.list_streams(after, limit, SortDirection.DESCENDING)

    def get_listener_spec(self, stream_id_str: str, listener_id_str: str) -> Listener:
        """Fetch a stored listener, checking it belongs to the stream when one is given."""
        stream_id = parse_uuid(stream_id_str) if stream_id_str else None
        listener_id = parse_uuid(listener_id_str)
        spec = self._persistence.get_listener(listener_id)
        if spec is None or (stream_id is not None and stream_id != spec.stream_id):
            raise TMError(ErrorCode.LISTENER_NOT_FOUND, listener_id)
        return spec

    def get_listener(self, stream_id_str: str, listener_id_str: str) -> ListenerWithStatus:
        spec = self.get_listener_spec(stream_id_str, listener_id_str)
        result = ListenerWithStatus(listener=replace(spec))
        try:
            hwm = self._connector.event_listener_hwm(spec.stream_id, spec.id)
        except Exception as err:
            log.warning("Failed to query status for listener %s/%s: %s",
                        spec.stream_id, spec.id, err)
        else:
            result.checkpoint = getattr(hwm, "checkpoint", None)
            result.catchup = bool(getattr(hwm, "catchup", False))
        return result

    def get_listeners(self, after_str: str, limit_str: str) -> list[Listener]:
        after, limit = parse_after_and_limit(after_str, limit_str)
        return self._persistence.list_listeners(after, limit, SortDirection.DESCENDING)

    def get_stream_listeners(self, after_str: str, limit_str: str, id_str: str) -> list[Listener]:
        after, limit = parse_after_and_limit(after_str, limit_str)
        stream_id = parse_uuid(id_str)
        return self._persistence.list_stream_listeners(
            after, limit, SortDirection.DESCENDING, stream_id)