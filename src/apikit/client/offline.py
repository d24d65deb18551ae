"""Store-and-forward queue for requests made while the API is unreachable.

:class:`OfflineQueue` holds :class:`QueuedRequest` records, persists them
as one JSON document through the cache's
:class:`~apikit.cache.storage.Storage` protocol and replays them in order
once the queue is online.  Each replay goes through
:func:`~apikit.client.retry.retry_with_backoff`; a request that still fails
stays queued with its ``retries`` count raised, and is dropped after
``max_retries`` failed passes.

Connectivity is reported by the owner with :meth:`OfflineQueue.set_online`.
With ``auto_process`` on, going online, enqueueing and resuming start a
background drain on the running event loop; :meth:`OfflineQueue.join`
waits for it.

:func:`create_offline_sender` puts the queue in front of an
:class:`~apikit.client.HttpClient`: writes that fail without a response are
queued and answered with a synthetic ``202 Accepted``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from apikit.cache.storage import Storage
from apikit.client.async_client import HttpClient
from apikit.client.retry import RetryConfig, retry_with_backoff
from apikit.exceptions import ApiError, StorageError
from apikit.models import ApiResponse, HTTPMethod, ParamValue, RequestConfig

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
"""Methods :func:`create_offline_sender` queues; reads are never queued."""


class QueueStatus(str, enum.Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    PAUSED = "paused"
    OFFLINE = "offline"


class QueuedRequest(BaseModel):
    """Everything needed to replay one call."""

    id: str
    method: HTTPMethod
    path: str
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, ParamValue] = Field(default_factory=dict)
    created_at: float
    retries: int = Field(default=0, description="Failed replay passes so far")
    priority: int = Field(default=0, description="Higher replays first when not FIFO")
    meta: dict[str, Any] = Field(default_factory=dict)


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class OfflineQueueConfig(BaseModel):
    """Behaviour of an :class:`OfflineQueue`."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    storage_key: str = "offline_queue"
    max_retries: int = Field(default=3, ge=1, description="Replay passes before a request is dropped")
    fifo: bool = Field(default=True, description="Replay in enqueue order; else by priority")
    auto_process: bool = True
    retry: RetryConfig = Field(default_factory=RetryConfig)
    on_success: Optional[Callable[[QueuedRequest, Any], None]] = None
    on_failure: Optional[Callable[[QueuedRequest, BaseException], None]] = None
    on_status_change: Optional[Callable[[QueueStatus], None]] = None


Executor = Callable[[QueuedRequest], Awaitable[Any]]

_QUEUE_ADAPTER = TypeAdapter(list[QueuedRequest])


class OfflineQueue:
    """Persistent replay queue.

    Args:
        executor: Coroutine function that performs one queued request, for
            example :func:`client_executor`.
        config: Queue behaviour.  Defaults to :class:`OfflineQueueConfig`.
        storage: Durable backend; ``None`` keeps the queue in memory only.
        online: Initial connectivity.
        clock: Wall-clock time source for ``created_at``.
    """

    def __init__(
        self,
        executor: Executor,
        config: Optional[OfflineQueueConfig] = None,
        storage: Optional[Storage] = None,
        online: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._executor = executor
        self._config = config or OfflineQueueConfig()
        self._storage = storage
        self._clock = clock
        self._online = online
        self._status = QueueStatus.IDLE if online else QueueStatus.OFFLINE
        self._queue: list[QueuedRequest] = []
        self._processing_ids: set[str] = set()
        self._stats = QueueStats()
        self._task: Optional[asyncio.Task[None]] = None
        self._load()

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def status(self) -> QueueStatus:
        return self._status

    @property
    def online(self) -> bool:
        return self._online

    @property
    def stats(self) -> QueueStats:
        return self._stats.model_copy()

    @property
    def requests(self) -> list[QueuedRequest]:
        """Queued requests in replay order."""
        return list(self._queue)

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def is_empty(self) -> bool:
        return not self._queue

    # ------------------------------------------------------------------ #
    # Queue management
    # ------------------------------------------------------------------ #

    def enqueue(
        self,
        method: Union[HTTPMethod, str],
        path: str,
        body: Any = None,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, ParamValue]] = None,
        priority: int = 0,
        meta: Optional[dict[str, Any]] = None,
    ) -> str:
        """Queue a request, persist the queue and return the request's id."""
        request = QueuedRequest(
            id=uuid.uuid4().hex,
            method=HTTPMethod(method.upper()) if isinstance(method, str) else method,
            path=path,
            body=body,
            headers=dict(headers or {}),
            params=dict(params or {}),
            created_at=self._clock(),
            priority=priority,
            meta=dict(meta or {}),
        )
        self._queue.append(request)
        if not self._config.fifo:
            self._queue.sort(key=lambda r: (-r.priority, r.created_at))
        logger.debug("Queued %s %s as %s", request.method.value, path, request.id)
        self._update_stats()
        self._save()

        if self._online and self._config.auto_process and self._status is QueueStatus.IDLE:
            self._schedule()
        return request.id

    def dequeue(self, request_id: str) -> bool:
        """Remove a request; return whether it was queued."""
        before = len(self._queue)
        self._queue = [r for r in self._queue if r.id != request_id]
        if len(self._queue) == before:
            return False
        self._update_stats()
        self._save()
        return True

    def clear(self) -> None:
        """Drop every queued request, including the persisted copy."""
        self._queue = []
        self._processing_ids.clear()
        self._update_stats()
        self._save()

    # ------------------------------------------------------------------ #
    # Processing
    # ------------------------------------------------------------------ #

    async def process(self) -> None:
        """Replay queued requests one at a time until the queue is drained.

        Returns immediately while paused or already processing.  Stops early
        when the queue is paused or goes offline.
        """
        if self._status in (QueueStatus.PROCESSING, QueueStatus.PAUSED):
            return
        if not self._online:
            self._set_status(QueueStatus.OFFLINE)
            return

        self._set_status(QueueStatus.PROCESSING)
        try:
            while self._can_continue():
                pending = [r for r in self._queue if r.id not in self._processing_ids]
                if not pending:
                    break
                for request in pending:
                    if not self._can_continue():
                        break
                    await self._process_request(request.id)
        finally:
            if self._status is QueueStatus.PROCESSING:
                self._set_status(QueueStatus.IDLE)

    def pause(self) -> None:
        """Stop processing after the request in flight."""
        if self._status is QueueStatus.PROCESSING:
            self._set_status(QueueStatus.PAUSED)

    def resume(self) -> None:
        """Leave the paused state and start a background drain."""
        if self._status is QueueStatus.PAUSED:
            self._set_status(QueueStatus.IDLE)
            self._schedule()

    def set_online(self, online: bool) -> None:
        """Report connectivity; coming back online triggers auto-processing."""
        self._online = online
        if not online:
            self._set_status(QueueStatus.OFFLINE)
        elif self._status is QueueStatus.OFFLINE:
            self._set_status(QueueStatus.IDLE)
            if self._config.auto_process:
                self._schedule()

    async def join(self) -> None:
        """Wait for the background drain, if one is running."""
        while self._task is not None and not self._task.done():
            await self._task

    async def _process_request(self, request_id: str) -> None:
        request = next((r for r in self._queue if r.id == request_id), None)
        if request is None:
            return

        self._processing_ids.add(request.id)
        self._update_stats()
        try:
            response = await retry_with_backoff(
                lambda: self._executor(request), self._config.retry
            )
        except Exception as exc:
            retries = request.retries + 1
            if retries >= self._config.max_retries:
                logger.warning(
                    "Dropping queued %s %s after %d attempts: %s",
                    request.method.value,
                    request.path,
                    retries,
                    exc,
                )
                self._remove(request.id)
                self._stats.failed += 1
                if self._config.on_failure is not None:
                    self._config.on_failure(request, exc)
            else:
                logger.debug(
                    "Replay of %s failed (%d/%d): %s",
                    request.id,
                    retries,
                    self._config.max_retries,
                    exc,
                )
                updated = request.model_copy(update={"retries": retries})
                self._queue = [updated if r.id == request.id else r for r in self._queue]
                self._save()
        else:
            self._remove(request.id)
            self._stats.completed += 1
            if self._config.on_success is not None:
                self._config.on_success(request, response)
        finally:
            self._processing_ids.discard(request.id)
            self._update_stats()

    def _can_continue(self) -> bool:
        return self._online and self._status is QueueStatus.PROCESSING

    def _schedule(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, call process() to replay the queue")
            return
        self._task = loop.create_task(self.process())

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _remove(self, request_id: str) -> None:
        self._queue = [r for r in self._queue if r.id != request_id]
        self._save()

    def _set_status(self, status: QueueStatus) -> None:
        if status is self._status:
            return
        self._status = status
        if self._config.on_status_change is not None:
            self._config.on_status_change(status)

    def _update_stats(self) -> None:
        self._stats.pending = len(self._queue)
        self._stats.processing = len(self._processing_ids)

    def _load(self) -> None:
        if self._storage is None:
            return
        try:
            raw = self._storage.get(self._config.storage_key)
            if raw:
                self._queue = _QUEUE_ADAPTER.validate_json(raw)
        except (ValidationError, StorageError, OSError) as exc:
            logger.warning("Failed to load offline queue from storage: %s", exc)
        self._update_stats()

    def _save(self) -> None:
        if self._storage is None:
            return
        try:
            data = _QUEUE_ADAPTER.dump_json(self._queue).decode("utf-8")
            self._storage.set(self._config.storage_key, data)
        except (PydanticSerializationError, StorageError, OSError) as exc:
            logger.warning("Failed to save offline queue to storage: %s", exc)

    def __repr__(self) -> str:
        return f"<OfflineQueue status={self._status.value} pending={len(self._queue)}>"


def client_executor(client: HttpClient) -> Executor:
    """Return an executor that replays queued requests through *client*."""

    async def execute(request: QueuedRequest) -> ApiResponse:
        config = RequestConfig(headers=request.headers, params=request.params, body=request.body)
        return await client.request(request.method, request.path, config)

    return execute


def _no_response(error: BaseException) -> bool:
    return isinstance(error, ApiError) and error.status == 0


def create_offline_sender(
    client: HttpClient,
    queue: OfflineQueue,
    queue_methods: frozenset[str] = DEFAULT_QUEUE_METHODS,
    is_offline_error: Callable[[BaseException], bool] = _no_response,
) -> Callable[..., Awaitable[ApiResponse]]:
    """Wrap :meth:`HttpClient.request` so failed writes are queued.

    A call whose method is in *queue_methods* and whose error satisfies
    *is_offline_error* (by default: no response received) is enqueued and
    answered with ``ApiResponse(status=202, data={"queued": True, "id": ...})``.
    Every other outcome is returned or raised unchanged.
    """

    async def send(
        method: Union[HTTPMethod, str],
        path: str,
        config: Optional[RequestConfig] = None,
    ) -> ApiResponse:
        try:
            return await client.request(method, path, config)
        except ApiError as exc:
            name = method.value if isinstance(method, HTTPMethod) else method.upper()
            if name not in queue_methods or not is_offline_error(exc):
                raise
            config = config or RequestConfig()
            request_id = queue.enqueue(
                name, path, body=config.body, headers=config.headers, params=config.params
            )
            return ApiResponse(
                data={"queued": True, "id": request_id},
                status=202,
                headers=httpx.Headers({"Content-Type": "application/json"}),
            )

    return send
