from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .llm import (
    EXTRACT_SYSTEM_PROMPT,
    PLAN_SYSTEM_PROMPT,
    ChatClient,
    UpstreamError,
    build_extract_prompt,
    build_plan_prompt,
    parse_directive,
)
from .schemas import ChatRequest, ExtractNotesRequest, NoteWrite, PlanRequest
from .settings import SettingsManager, data_dir_from_env
from .storage import (
    ConversationHistory,
    InvalidNoteError,
    NoteNotFoundError,
    NoteStore,
    validate_filename,
)


def _configure_logging(log_file: Path) -> logging.Logger:
    logger = logging.getLogger("notes_agent")
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False
    logger.debug("Logging initialised, writing to %s", log_file)
    return logger


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _register_exception_handlers(app: FastAPI, logger: logging.Logger) -> None:
    @app.exception_handler(NoteNotFoundError)
    async def note_not_found(request: Request, exc: NoteNotFoundError) -> JSONResponse:
        return _error("Note not found", status.HTTP_404_NOT_FOUND)

    @app.exception_handler(InvalidNoteError)
    async def invalid_note(request: Request, exc: InvalidNoteError) -> JSONResponse:
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
        return _error(str(exc), status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(UpstreamError)
    async def upstream_failure(request: Request, exc: UpstreamError) -> JSONResponse:
        return _error(str(exc), status.HTTP_502_BAD_GATEWAY)

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"error": "Invalid request body.", "detail": jsonable_errors(exc)},
            status_code=422,
        )

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return _error(str(exc) or type(exc).__name__, status.HTTP_500_INTERNAL_SERVER_ERROR)


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


def create_app(data_dir: Optional[Path] = None) -> FastAPI:
    data_dir = data_dir or data_dir_from_env()
    data_dir.mkdir(parents=True, exist_ok=True)
    logger = _configure_logging(data_dir / "server.log")

    settings_manager = SettingsManager(data_dir / "settings.json")
    note_store = NoteStore(
        settings_manager.notes_dir,
        preview_chars=int(settings_manager.settings.get("preview_chars") or 100),
    )
    history = ConversationHistory(
        max_turns=int(settings_manager.history.get("max_turns") or 20),
        max_conversations=int(settings_manager.history.get("max_conversations") or 64),
    )
    chat_client = ChatClient.from_settings(settings_manager.upstream)

    app = FastAPI(title="Notes Agent")
    app.state.settings_manager = settings_manager
    app.state.note_store = note_store
    app.state.history = history
    app.state.chat_client = chat_client
    _register_exception_handlers(app, logger)

    @app.get("/api/notes")
    def list_notes() -> JSONResponse:
        return JSONResponse([summary.to_dict() for summary in note_store.list()])

    @app.get("/api/notes/{filename:path}")
    def read_note(filename: str) -> JSONResponse:
        return JSONResponse({"content": note_store.read(filename)})

    @app.post("/api/notes/{filename:path}")
    def write_note(filename: str, body: NoteWrite) -> JSONResponse:
        message = note_store.write(filename, body.content, body.mode.value)
        return JSONResponse({"success": True, "message": message})

    @app.delete("/api/notes/{filename:path}")
    def delete_note(filename: str) -> JSONResponse:
        note_store.delete(filename)
        return JSONResponse({"success": True, "message": "Note deleted"})

    @app.get("/api/search")
    def search_notes(q: str = "") -> JSONResponse:
        return JSONResponse([hit.to_dict() for hit in note_store.search(q)])

    @app.post("/api/chat")
    def chat(body: ChatRequest) -> JSONResponse:
        prior = history.messages(body.conversation_id)
        reply = chat_client.chat(body.message, body.api_key, history=prior)
        text = reply.text
        if body.conversation_id and reply.ok and text:
            history.record(
                body.conversation_id,
                [("user", body.message), ("assistant", text)],
            )
        logger.info(
            "Chat relayed status=%s conversation=%s history=%d",
            reply.status_code,
            body.conversation_id or "-",
            len(prior),
        )
        return JSONResponse(reply.payload, status_code=reply.status_code)

    @app.post("/api/plan")
    def plan(body: PlanRequest) -> JSONResponse:
        if not body.api_key:
            return _error("An API key is required.", status.HTTP_400_BAD_REQUEST)
        prompt = build_plan_prompt(body.dump, body.available_minutes, body.energy.value)
        text = chat_client.complete_text(prompt, body.api_key, system=PLAN_SYSTEM_PROMPT)
        logger.info(
            "Generated plan (minutes=%d energy=%s)", body.available_minutes, body.energy.value
        )
        return JSONResponse({"plan": text})

    @app.post("/api/extract-notes")
    def extract_notes(body: ExtractNotesRequest) -> JSONResponse:
        if not body.api_key:
            return _error("An API key is required.", status.HTTP_400_BAD_REQUEST)
        text = chat_client.complete_text(
            build_extract_prompt(body.instruction), body.api_key, system=EXTRACT_SYSTEM_PROMPT
        )
        directive = parse_directive(text)
        if directive is None:
            raise UpstreamError("Upstream reply did not contain a note directive.")
        try:
            validate_filename(directive.filename)
        except InvalidNoteError as exc:
            raise UpstreamError(f"Upstream suggested an unusable filename: {exc}") from exc
        return JSONResponse({"filename": directive.filename, "content": directive.content})

    @app.get("/api/status")
    def status_endpoint() -> JSONResponse:
        return JSONResponse(
            {
                "status": "ok",
                "notes": note_store.count(),
                "model": chat_client.model,
                "conversations": len(history),
            }
        )

    public_dir = settings_manager.public_dir
    if public_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(public_dir), html=True), name="public")
        logger.debug("Serving static assets from %s", public_dir)

    logger.info("Notes stored in %s", note_store.root)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "notes_agent.main:app",
        host=os.environ.get("NOTES_AGENT_HOST", "127.0.0.1"),
        port=int(os.environ.get("PORT", "3000")),
    )


# Convenience include for uvicorn.
__all__ = ["app", "create_app", "run"]
