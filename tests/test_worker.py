"""Tests for the worker shell, worker pool and caller-side service."""
from __future__ import annotations

import asyncio
import threading

import pytest

from services.tex.errors import FatalParseError, NoWorkerAvailable, WorkerError, WorkerTimeout
from services.tex.math_protection import TOKEN_RE
from services.tex.parser import ParseResult, TexParser
from services.worker import (
    ParseWorker,
    TexRenderService,
    WorkerPool,
    WorkerRequest,
    WorkerResponse,
    WorkerState,
    error_html,
    handle_request,
)

RELEASE = threading.Event()
STARTED = threading.Event()


class ExplodingParser(TexParser):
    def parse_with_diagnostics(self, source: str) -> ParseResult:
        raise FatalParseError("kaboom")


class BlockingParser(TexParser):
    """Hangs on the source text "block" until RELEASE is set."""

    def parse_with_diagnostics(self, source: str) -> ParseResult:
        if source == "block":
            STARTED.set()
            RELEASE.wait(10)
        return super().parse_with_diagnostics(source)


@pytest.fixture
def gate():
    RELEASE.clear()
    STARTED.clear()
    yield RELEASE
    RELEASE.set()


class TestMessages:
    def test_request_from_message(self) -> None:
        request = WorkerRequest.from_message({"id": "a1", "sourceText": "x"})
        assert request == WorkerRequest(id="a1", source_text="x")
        assert request.to_message() == {"id": "a1", "sourceText": "x"}

    def test_success_message(self) -> None:
        assert WorkerResponse(id=1, html="<p>x</p>").to_message() == {"id": 1, "html": "<p>x</p>"}

    def test_error_message(self) -> None:
        assert WorkerResponse(id=2, error="bad").to_message() == {"id": 2, "error": "bad"}

    def test_diagnostics_included_when_present(self) -> None:
        diagnostics = [{"stage": "tables", "message": "m", "context": ""}]
        message = WorkerResponse(id=3, html="", diagnostics=diagnostics).to_message()
        assert message["diagnostics"] == diagnostics
        assert WorkerResponse.from_message(message) == WorkerResponse(id=3, html="", diagnostics=diagnostics)


class TestHandleRequest:
    def test_success_echoes_id(self) -> None:
        response = handle_request(TexParser(), WorkerRequest(id="r", source_text="\\section{A}"))
        assert response.id == "r"
        assert response.ok
        assert "<h1>A</h1>" in response.html

    def test_non_string_source(self) -> None:
        response = handle_request(TexParser(), WorkerRequest(id="r", source_text=42))
        assert response.error == "sourceText must be a string"

    def test_fatal_error_becomes_response(self) -> None:
        response = handle_request(ExplodingParser(), WorkerRequest(id="r", source_text="x"))
        assert response == WorkerResponse(id="r", error="kaboom")

    def test_diagnostics_are_attached(self) -> None:
        response = handle_request(TexParser(), WorkerRequest(id="r", source_text="\\textbf{x"))
        assert response.ok
        assert response.diagnostics[0]["stage"] == "paragraphs"


def test_worker_processes_in_order() -> None:
    responses = []
    done = threading.Event()

    def on_response(worker: ParseWorker, response: WorkerResponse) -> None:
        responses.append(response.id)
        if len(responses) == 3:
            done.set()

    worker = ParseWorker("Worker-test", on_response)
    worker.start()
    for idx in range(3):
        worker.submit(WorkerRequest(id=idx, source_text=f"\\section{{S{idx}}}"))
    assert done.wait(5)
    worker.stop()
    worker.join(5)
    assert responses == [0, 1, 2]
    assert worker.state is WorkerState.STOPPED
    with pytest.raises(WorkerError):
        worker.submit(WorkerRequest(id=9, source_text="x"))


class TestWorkerPool:
    def test_call_round_trip(self) -> None:
        with WorkerPool(size=2, timeout=5) as pool:
            response = pool.call(WorkerRequest(id="r1", source_text="\\section{A}"))
        assert response.id == "r1"
        assert "<h1>A</h1>" in response.html

    def test_concurrent_requests_are_correlated(self) -> None:
        with WorkerPool(size=3, timeout=5) as pool:
            futures = {
                idx: pool.submit(WorkerRequest(id=f"doc-{idx}", source_text=f"\\section{{Title {idx}}}"))
                for idx in range(8)
            }
            for idx, future in futures.items():
                response = future.result(timeout=5)
                assert response.id == f"doc-{idx}"
                assert f"<h1>Title {idx}</h1>" in response.html

    def test_concurrent_math_stays_with_its_document(self) -> None:
        def source(idx: int) -> str:
            return "\n\n".join(f"Inline $a_{{{idx}}}$ then $$b_{{{idx}}}$$ done." for _ in range(25))

        with WorkerPool(size=3, timeout=10) as pool:
            futures = {
                idx: pool.submit(WorkerRequest(id=f"math-{idx}", source_text=source(idx)))
                for idx in range(12)
            }
            for idx, future in futures.items():
                html = future.result(timeout=10).html
                assert TOKEN_RE.search(html) is None
                assert html.count(f"\\(a_{{{idx}}}\\)") == 25
                assert html.count(f'<div class="article-equation">$$b_{{{idx}}}$$</div>') == 25
                others = [n for n in range(12) if n != idx]
                assert not any(f"_{{{n}}}" in html for n in others)

    def test_error_response(self) -> None:
        with WorkerPool(size=1, parser_factory=ExplodingParser, timeout=5) as pool:
            response = pool.call(WorkerRequest(id="e", source_text="x"))
            assert response == WorkerResponse(id="e", error="kaboom")
            with pytest.raises(WorkerError, match="kaboom"):
                pool.parse("x")

    def test_duplicate_in_flight_id(self, gate: threading.Event) -> None:
        with WorkerPool(size=1, parser_factory=BlockingParser, timeout=5) as pool:
            future = pool.submit(WorkerRequest(id="dup", source_text="block"))
            with pytest.raises(ValueError):
                pool.submit(WorkerRequest(id="dup", source_text="x"))
            gate.set()
            assert future.result(timeout=5).ok

    def test_timeout_replaces_worker(self, gate: threading.Event) -> None:
        with WorkerPool(size=1, parser_factory=BlockingParser, timeout=0.2) as pool:
            stuck = pool.workers[0]
            with pytest.raises(WorkerTimeout):
                pool.call(WorkerRequest(id="slow", source_text="block"))
            assert pool.workers[0] is not stuck

            response = pool.call(WorkerRequest(id="next", source_text="\\section{Fresh}"))
            assert "<h1>Fresh</h1>" in response.html

            # the late answer from the retired worker is dropped
            gate.set()
            stuck.join(5)
            assert not stuck.is_alive()

    def test_queued_requests_are_rerouted(self, gate: threading.Event) -> None:
        with WorkerPool(size=1, parser_factory=BlockingParser, timeout=5) as pool:
            stuck_future = pool.submit(WorkerRequest(id="stuck", source_text="block"))
            assert STARTED.wait(5)
            queued = pool.submit(WorkerRequest(id="queued", source_text="\\section{Q}"))

            assert pool._abandon("stuck")
            assert stuck_future.cancelled()
            assert "<h1>Q</h1>" in queued.result(timeout=5).html

    def test_parse_async(self) -> None:
        with WorkerPool(size=1, timeout=5) as pool:
            html = asyncio.run(pool.parse_async("\\section{Async}"))
        assert "<h1>Async</h1>" in html

    def test_async_timeout(self, gate: threading.Event) -> None:
        with WorkerPool(size=1, parser_factory=BlockingParser, timeout=0.2) as pool:
            with pytest.raises(WorkerTimeout):
                asyncio.run(pool.parse_async("block"))

    def test_shutdown_pool_rejects_requests(self) -> None:
        pool = WorkerPool(size=1, timeout=5)
        pool.shutdown()
        assert not pool.alive
        with pytest.raises(NoWorkerAvailable):
            pool.submit(WorkerRequest(id="late", source_text="x"))


class TestTexRenderService:
    def test_render_through_pool(self) -> None:
        service = TexRenderService(pool=WorkerPool(size=1, timeout=5))
        try:
            assert "<h1>Pooled</h1>" in service.render("\\section{Pooled}")
        finally:
            service.close()

    def test_fallback_without_pool(self) -> None:
        service = TexRenderService(pool=None)
        assert "<h1>Local</h1>" in service.render("\\section{Local}")

    def test_fallback_when_pool_is_dead(self) -> None:
        pool = WorkerPool(size=1, timeout=5)
        pool.shutdown()
        service = TexRenderService(pool=pool)
        assert "<h1>Local</h1>" in service.render("\\section{Local}")

    def test_empty_source(self) -> None:
        assert TexRenderService(pool=None).render("") == ""

    def test_error_state_html(self) -> None:
        service = TexRenderService(pool=None, parser_factory=ExplodingParser)
        assert service.render("x") == error_html("kaboom")
        assert error_html("a < b") == (
            '<div class="error-message">Error loading article: a &lt; b</div>'
        )

    def test_handle_message(self) -> None:
        service = TexRenderService(pool=WorkerPool(size=1, timeout=5))
        try:
            assert service.handle_message({"id": 7, "sourceText": "x"}) == {
                "id": 7,
                "html": '<div class="article-section"><p>x</p></div>',
            }
            assert service.handle_message({"id": 8, "sourceText": None}) == {
                "id": 8,
                "error": "sourceText must be a string",
            }
        finally:
            service.close()

    def test_timeout_becomes_error_message(self, gate: threading.Event) -> None:
        pool = WorkerPool(size=1, parser_factory=BlockingParser, timeout=0.2)
        service = TexRenderService(pool=pool)
        try:
            message = service.handle_message({"id": "t", "sourceText": "block"})
            assert message["id"] == "t"
            assert "timed out" in message["error"]
        finally:
            gate.set()
            service.close()

    def test_async_handle_message(self) -> None:
        service = TexRenderService(pool=None)
        message = asyncio.run(service.handle_message_async({"id": "a", "sourceText": "\\section{A}"}))
        assert message["id"] == "a"
        assert "<h1>A</h1>" in message["html"]
