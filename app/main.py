from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx
from fastapi import FastAPI, File, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles

from config.settings import Settings, get_settings
from relay.chat import ChatRelay
from relay.core.memory import JsonConversationStore
from relay.gemini import GeminiClient
from relay.tools.image_fetch import ImageFetcher


logger = logging.getLogger("relay")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format="[%(asctime)s] %(levelname)s - %(message)s")


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the FastAPI app.

    ``transport`` is handed to the shared httpx client; tests pass an
    ``httpx.MockTransport`` to stand in for Gemini and image hosts.
    """
    settings = settings or get_settings()
    upload_dir = Path(settings.upload_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        upload_dir.mkdir(parents=True, exist_ok=True)
        async with httpx.AsyncClient(transport=transport) as client:
            store = JsonConversationStore(settings.convo_file)
            app.state.store = store
            app.state.relay = ChatRelay(
                store=store,
                model_client=GeminiClient(
                    client,
                    api_key=settings.gemini_api_key,
                    model=settings.gemini_model,
                    base_url=settings.gemini_base_url,
                    timeout=settings.model_timeout,
                ),
                image_fetcher=ImageFetcher(
                    client,
                    timeout=settings.image_timeout,
                    upload_dir=upload_dir,
                ),
                history_view_limit=settings.history_view_limit,
            )
            logger.info(
                "Config: model=%s key_set=%s convo_file=%s",
                settings.gemini_model,
                bool(settings.gemini_api_key),
                store.path,
            )
            logger.info("Server running at http://localhost:%s", settings.port)
            logger.info("Gemini Chat available at http://localhost:%s/gemini-chat", settings.port)
            yield

    app = FastAPI(title="Gemini Chat Relay", version="1.0.0", lifespan=lifespan)

    # CORS: allow local frontend during development
    if settings.app_env.lower() in {"dev", "development", "local"}:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.mount("/uploads", StaticFiles(directory=upload_dir, check_dir=False), name="uploads")

    @app.get("/")
    def index():
        page = Path(settings.static_dir) / "index.html"
        if not page.is_file():
            return JSONResponse(status_code=404, content={"status": False, "error": "index.html not found"})
        return FileResponse(page)

    @app.get("/gemini-chat")
    async def gemini_chat(
        prompt: Optional[str] = Query(None),
        uid: Optional[str] = Query(None),
        img_url: Optional[str] = Query(None, alias="imgUrl"),
        clear: Optional[str] = Query(None),
    ) -> JSONResponse:
        relay: ChatRelay = app.state.relay
        try:
            outcome = await relay.handle_chat(uid, prompt, img_url=img_url, clear=clear == "true")
        except Exception as e:
            logger.exception("Chat processing failed: %s", e)
            return JSONResponse(
                status_code=500,
                content={"status": False, "error": "Failed to get response from Gemini API"},
            )
        return JSONResponse(status_code=outcome.status_code, content=outcome.body)

    @app.post("/upload-image")
    async def upload_image(image: Optional[UploadFile] = File(None)) -> JSONResponse:
        if image is None or not image.filename:
            return JSONResponse(status_code=400, content={"status": False, "error": "No file uploaded"})
        try:
            filename = f"{uuid4().hex}{Path(image.filename).suffix.lower()}"
            data = await image.read()
            if not data:
                return JSONResponse(status_code=400, content={"status": False, "error": "No file uploaded"})
            await asyncio.to_thread((upload_dir / filename).write_bytes, data)
        except OSError as e:
            logger.exception("Upload failed: %s", e)
            return JSONResponse(status_code=500, content={"status": False, "error": str(e)})
        finally:
            await image.close()

        logger.info("Stored upload %s (%s bytes)", filename, len(data))
        body: Dict[str, Any] = {
            "status": True,
            "url": f"/uploads/{filename}",
            "message": "Image uploaded successfully",
        }
        return JSONResponse(content=body)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


configure_logging(get_settings().log_level)
app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
