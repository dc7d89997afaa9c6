"""Worker execution shell.

Parsing runs on dedicated worker threads so a slow document never blocks
the caller. Callers talk to workers with id-correlated request/response
messages:

    request:  {"id": ..., "sourceText": "..."}
    response: {"id": ..., "html": "..."}  or  {"id": ..., "error": "..."}

Each ParseWorker handles its inbox strictly in order. WorkerPool spreads
requests over several workers and enforces the caller-side timeout by
retiring a stuck worker and starting a fresh one.
"""
from __future__ import annotations

import asyncio
import queue
import threading
import uuid
from concurrent.futures import Future, InvalidStateError
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.config import settings
from core.logger import logger
from services.tex.errors import NoWorkerAvailable, WorkerError, WorkerTimeout
from services.tex.parser import TexParser
from utils.html_utils import escape_html

ParserFactory = Callable[[], TexParser]

_STOP = object()


class WorkerState(str, Enum):
    IDLE = "idle"
    PARSING = "parsing"
    STOPPED = "stopped"


@dataclass
class WorkerRequest:
    id: Any
    source_text: Any

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "WorkerRequest":
        return cls(id=message.get("id"), source_text=message.get("sourceText"))

    def to_message(self) -> Dict[str, Any]:
        return {"id": self.id, "sourceText": self.source_text}


@dataclass
class WorkerResponse:
    id: Any
    html: Optional[str] = None
    error: Optional[str] = None
    diagnostics: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "WorkerResponse":
        return cls(
            id=message.get("id"),
            html=message.get("html"),
            error=message.get("error"),
            diagnostics=list(message.get("diagnostics") or []),
        )

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"id": self.id}
        if self.error is not None:
            message["error"] = self.error
        else:
            message["html"] = self.html
        if self.diagnostics:
            message["diagnostics"] = self.diagnostics
        return message


def handle_request(parser: TexParser, request: WorkerRequest) -> WorkerResponse:
    """Run one request through parser; never raises."""
    if not isinstance(request.source_text, str):
        return WorkerResponse(id=request.id, error="sourceText must be a string")
    try:
        result = parser.parse_with_diagnostics(request.source_text)
    except Exception as exc:  # noqa: BLE001
        return WorkerResponse(id=request.id, error=str(exc) or exc.__class__.__name__)
    return WorkerResponse(
        id=request.id,
        html=result.html,
        diagnostics=[error.to_dict() for error in result.errors],
    )


def error_html(message: str) -> str:
    """Visible failure state for an article that could not be rendered."""
    return f'<div class="error-message">Error loading article: {escape_html(message)}</div>'


class ParseWorker(threading.Thread):
    """One parser on one thread, fed through a queue."""

    def __init__(
        self,
        name: str,
        on_response: Callable[["ParseWorker", WorkerResponse], None],
        parser_factory: ParserFactory = TexParser,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self.parser = parser_factory()
        self.on_response = on_response
        self.inbox: "queue.Queue[Any]" = queue.Queue()
        self.state = WorkerState.IDLE
        self.current_id: Any = None

    def submit(self, request: WorkerRequest) -> None:
        if self.state is WorkerState.STOPPED:
            raise WorkerError(f"{self.name} is stopped", request.id)
        self.inbox.put(request)

    def stop(self) -> None:
        self.inbox.put(_STOP)

    def drain(self) -> List[WorkerRequest]:
        """Take back every request still waiting in the inbox."""
        requests: List[WorkerRequest] = []
        while True:
            try:
                item = self.inbox.get_nowait()
            except queue.Empty:
                return requests
            if item is not _STOP:
                requests.append(item)

    def run(self) -> None:
        logger.info("[%s] Worker started", self.name)
        while True:
            request = self.inbox.get()
            if request is _STOP:
                break
            self.state = WorkerState.PARSING
            self.current_id = request.id
            logger.debug("[%s] Parsing request %r", self.name, request.id)
            response = handle_request(self.parser, request)
            self.current_id = None
            self.state = WorkerState.IDLE
            try:
                self.on_response(self, response)
            except Exception:  # noqa: BLE001
                logger.exception("[%s] Response handler failed for %r", self.name, request.id)
        self.state = WorkerState.STOPPED
        logger.info("[%s] Worker stopped", self.name)


class WorkerPool:
    """Route requests to a fixed number of ParseWorkers and await the answers."""

    def __init__(
        self,
        size: Optional[int] = None,
        parser_factory: ParserFactory = TexParser,
        timeout: Optional[float] = None,
    ) -> None:
        self.size = max(1, size or settings.worker_count)
        # 0 means wait forever
        self.timeout = settings.parse_timeout if timeout is None else timeout
        self._factory = parser_factory
        self._lock = threading.Lock()
        self._pending: Dict[Any, Tuple[Future, ParseWorker]] = {}
        self._spawned = 0
        self._closed = False
        self._workers: List[ParseWorker] = [self._spawn() for _ in range(self.size)]

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    @property
    def workers(self) -> List[ParseWorker]:
        return list(self._workers)

    @property
    def alive(self) -> bool:
        return not self._closed and any(worker.is_alive() for worker in self._workers)

    def _spawn(self) -> ParseWorker:
        self._spawned += 1
        worker = ParseWorker(f"Worker-{self._spawned}", self._deliver, self._factory)
        worker.start()
        return worker

    def _load(self, worker: ParseWorker) -> int:
        return sum(1 for _, owner in self._pending.values() if owner is worker)

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------
    def submit(self, request: WorkerRequest) -> Future:
        """Queue request on the least busy worker; returns a Future[WorkerResponse]."""
        with self._lock:
            if self._closed:
                raise NoWorkerAvailable("Worker pool is shut down", request.id)
            if request.id in self._pending:
                raise ValueError(f"Request id {request.id!r} is already in flight")
            live = [worker for worker in self._workers if worker.is_alive()]
            if not live:
                raise NoWorkerAvailable("No parse worker is running", request.id)
            worker = min(live, key=self._load)
            future: Future = Future()
            self._pending[request.id] = (future, worker)
            worker.submit(request)
        return future

    def _deliver(self, worker: ParseWorker, response: WorkerResponse) -> None:
        with self._lock:
            entry = self._pending.get(response.id)
            if entry is None or entry[1] is not worker:
                # Late answer from a retired worker
                logger.debug("[WorkerPool] Dropping stale response %r from %s", response.id, worker.name)
                return
            del self._pending[response.id]
        try:
            entry[0].set_result(response)
        except InvalidStateError:
            logger.debug("[WorkerPool] Caller no longer waiting for %r", response.id)

    def call(self, request: WorkerRequest, timeout: Optional[float] = None) -> WorkerResponse:
        """Send request and block for its response."""
        timeout = self.timeout if timeout is None else timeout
        future = self.submit(request)
        try:
            return future.result(timeout=timeout or None)
        except FutureTimeout:
            if not self._abandon(request.id):
                # Answer landed between the timeout and the abandon
                return future.result()
            raise WorkerTimeout(
                f"Parse request {request.id!r} timed out after {timeout}s", request.id
            ) from None

    async def call_async(self, request: WorkerRequest, timeout: Optional[float] = None) -> WorkerResponse:
        timeout = self.timeout if timeout is None else timeout
        future = self.submit(request)
        try:
            return await asyncio.wait_for(asyncio.wrap_future(future), timeout or None)
        except asyncio.TimeoutError:
            self._abandon(request.id)
            raise WorkerTimeout(
                f"Parse request {request.id!r} timed out after {timeout}s", request.id
            ) from None

    def parse(self, source: str, timeout: Optional[float] = None) -> str:
        """Render source on a worker; raises WorkerError for an error response."""
        response = self.call(WorkerRequest(id=uuid.uuid4().hex, source_text=source), timeout)
        if response.error is not None:
            raise WorkerError(response.error, response.id)
        return response.html or ""

    async def parse_async(self, source: str, timeout: Optional[float] = None) -> str:
        response = await self.call_async(WorkerRequest(id=uuid.uuid4().hex, source_text=source), timeout)
        if response.error is not None:
            raise WorkerError(response.error, response.id)
        return response.html or ""

    def _abandon(self, request_id: Any) -> bool:
        """Retire the worker stuck on request_id and replace it.

        Returns False when the request had already been answered.
        """
        with self._lock:
            entry = self._pending.pop(request_id, None)
            if entry is None:
                return False
            future, stuck = entry
            future.cancel()
            replacement = self._spawn()
            if stuck in self._workers:
                self._workers[self._workers.index(stuck)] = replacement
            else:
                self._workers.append(replacement)
            rerouted = []
            for request in stuck.drain():
                waiting = self._pending.get(request.id)
                if waiting is None or waiting[1] is not stuck:
                    # the abandoned request itself, if it was never picked up
                    continue
                self._pending[request.id] = (waiting[0], replacement)
                replacement.submit(request)
                rerouted.append(request)
            stuck.stop()

        logger.warning(
            "[WorkerPool] %s timed out on %r; replaced by %s, %d queued requests re-routed",
            stuck.name,
            request_id,
            replacement.name,
            len(rerouted),
        )
        return True

    def shutdown(self, wait: bool = True, join_timeout: float = 5.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            workers = list(self._workers)
            pending = list(self._pending.values())
            self._pending.clear()

        for future, _ in pending:
            future.cancel()
        for worker in workers:
            worker.stop()
        if wait:
            for worker in workers:
                worker.join(join_timeout)
        logger.info("[WorkerPool] Shut down %d workers", len(workers))


class TexRenderService:
    """Caller side of the worker protocol.

    Uses the pool when it can and falls back to parsing on the calling
    thread when there is no pool, every worker is gone, or the input is
    empty.
    """

    def __init__(self, pool: Optional[WorkerPool] = None, parser_factory: ParserFactory = TexParser) -> None:
        self.pool = pool
        self._factory = parser_factory
        self._fallback: Optional[TexParser] = None
        self._fallback_lock = threading.Lock()

    @classmethod
    def from_settings(cls) -> "TexRenderService":
        return cls(pool=WorkerPool(settings.worker_count))

    def _use_pool(self, request: WorkerRequest) -> bool:
        if self.pool is None or not self.pool.alive:
            return False
        return isinstance(request.source_text, str) and bool(request.source_text.strip())

    def _parse_locally(self, request: WorkerRequest) -> WorkerResponse:
        with self._fallback_lock:
            if self._fallback is None:
                self._fallback = self._factory()
            return handle_request(self._fallback, request)

    def dispatch(self, request: WorkerRequest) -> WorkerResponse:
        if self._use_pool(request):
            try:
                return self.pool.call(request)
            except NoWorkerAvailable:
                logger.warning("[TexRenderService] No worker available, parsing %r in-thread", request.id)
            except (WorkerTimeout, ValueError) as exc:
                return WorkerResponse(id=request.id, error=str(exc))
        return self._parse_locally(request)

    async def dispatch_async(self, request: WorkerRequest) -> WorkerResponse:
        if self._use_pool(request):
            try:
                return await self.pool.call_async(request)
            except NoWorkerAvailable:
                logger.warning("[TexRenderService] No worker available, parsing %r in-thread", request.id)
            except (WorkerTimeout, ValueError) as exc:
                return WorkerResponse(id=request.id, error=str(exc))
        return await asyncio.to_thread(self._parse_locally, request)

    def handle_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        return self.dispatch(WorkerRequest.from_message(message)).to_message()

    async def handle_message_async(self, message: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.dispatch_async(WorkerRequest.from_message(message))
        return response.to_message()

    def render(self, source: str) -> str:
        """HTML for source, or the error-state block if parsing failed."""
        response = self.dispatch(WorkerRequest(id=uuid.uuid4().hex, source_text=source))
        if response.error is not None:
            logger.error("[TexRenderService] Article failed to render: %s", response.error)
            return error_html(response.error)
        return response.html or ""

    async def render_async(self, source: str) -> str:
        response = await self.dispatch_async(WorkerRequest(id=uuid.uuid4().hex, source_text=source))
        if response.error is not None:
            logger.error("[TexRenderService] Article failed to render: %s", response.error)
            return error_html(response.error)
        return response.html or ""

    def close(self) -> None:
        if self.pool is not None:
            self.pool.shutdown()
