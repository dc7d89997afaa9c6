"""Application entry point for the TeX article renderer (FastAPI service and CLI)."""
from __future__ import annotations

import sys
from typing import Any, List, Optional

import uvicorn
from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from core.config import settings
from core.logger import init_logging, logger
from services.exporters.html_writer import HTMLWriter
from services.worker import TexRenderService
from utils.file_utils import collect_tex_files, ensure_directories, read_text


def create_app(service: Optional[TexRenderService] = None) -> FastAPI:
    """Create FastAPI app exposing the worker message protocol."""
    app = FastAPI(title="TeX Article Renderer", version="0.1.0")
    render_service = service or TexRenderService.from_settings()
    app.state.render_service = render_service

    @app.on_event("startup")
    async def startup_event() -> None:
        init_logging()
        ensure_directories()
        logger.info("FastAPI service started")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        render_service.close()
        logger.info("FastAPI service stopped")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/parse")
    async def parse(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        """Render {id, sourceText} into {id, html} or {id, error}."""
        try:
            message = await render_service.handle_message_async(payload)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Parse request failed: %s", exc)
            return JSONResponse({"id": payload.get("id"), "error": str(exc)}, status_code=500)
        return JSONResponse(message)

    return app


def render_files(paths: List[str]) -> int:
    """Render .tex files into standalone pages; returns the number of failures."""
    files = collect_tex_files(paths)
    if not files:
        logger.error("No .tex files found in: %s", " ".join(paths))
        return 1

    writer = HTMLWriter()
    service = TexRenderService.from_settings()
    failures = 0
    try:
        for path in files:
            try:
                body = service.render(read_text(path))
            except Exception as exc:  # noqa: BLE001
                logger.exception("Rendering %s failed: %s", path, exc)
                failures += 1
                continue
            output = writer.write_article(body, path.name)
            logger.info("Rendered %s -> %s", path, output)
    finally:
        service.close()
    return failures


def main() -> None:
    """Entry point for CLI; starts FastAPI or renders files based on args."""
    init_logging()
    ensure_directories()

    mode: Optional[str] = sys.argv[1] if len(sys.argv) > 1 else None

    if mode == "render":
        if len(sys.argv) < 3:
            logger.error("Usage: python app.py render FILE_OR_DIR [FILE_OR_DIR ...]")
            sys.exit(2)
        sys.exit(1 if render_files(sys.argv[2:]) else 0)
    elif mode in (None, "api"):
        logger.info("Starting FastAPI server at %s:%s", settings.host, settings.port)
        uvicorn.run(create_app(), host=settings.host, port=settings.port)
    else:
        logger.error("Unknown mode %r; expected 'api' or 'render'", mode)
        sys.exit(2)


if __name__ == "__main__":
    main()
