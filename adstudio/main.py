import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from adstudio.ad_copy import generate_ad
from adstudio.config import API_KEY_ENV, PROVIDER_LABELS, Settings, configure_logging
from adstudio.errors import AdStudioError
from adstudio.images import GatewayImageStrategy, ImageStrategy, SingleImageStrategy, build_image_strategy
from adstudio.pacing import IntervalPacer, Pacer
from adstudio.refiner import RefinerBackend, build_refiner_backend, refine
from adstudio.schemas import (
    AdBrief,
    AdContent,
    ImageRequest,
    PairedImageResponse,
    RefinementResponse,
    RefinerRequest,
    SingleImageResponse,
    TranscriptionResponse,
    VideoFramesRequest,
    VideoFramesResponse,
)
from adstudio.transcriber import transcribe
from adstudio.video_frames import generate_frames

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_http_client(settings: Settings = Depends(get_settings)) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        yield client


def get_image_strategy(request: Request) -> ImageStrategy:
    return request.app.state.image_strategy


def get_frame_strategy(request: Request) -> SingleImageStrategy:
    return request.app.state.frame_strategy


def get_refiner_backend(request: Request) -> RefinerBackend:
    return request.app.state.refiner_backend


def get_pacer(settings: Settings = Depends(get_settings)) -> Pacer:
    return IntervalPacer(settings.frame_interval_seconds)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request."
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid value")
    return f"Invalid field '{location}': {message}." if location else f"Invalid request: {message}."


def create_app(settings: Settings | None = None) -> FastAPI:
    if settings is None:
        load_dotenv()
        settings = Settings.from_env()
    else:
        settings.validate()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info(
            "Ad studio ready: image provider=%s, refiner=%s",
            settings.image_provider,
            settings.refiner_provider,
        )
        yield

    app = FastAPI(title="Ad Creative Studio", lifespan=lifespan)
    app.state.settings = settings
    app.state.image_strategy = build_image_strategy(settings)
    app.state.frame_strategy = GatewayImageStrategy(settings)
    app.state.refiner_backend = build_refiner_backend(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AdStudioError)
    async def handle_ad_studio_error(_: Request, exc: AdStudioError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @app.options("/{path:path}")
    async def preflight(path: str) -> Response:
        return Response(status_code=200)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/providers")
    async def get_providers(settings: Settings = Depends(get_settings)) -> dict[str, Any]:
        providers = {
            provider_id: {
                "label": PROVIDER_LABELS[provider_id],
                "requiresKey": env_name,
                "hasKey": settings.has_key(provider_id),
            }
            for provider_id, env_name in API_KEY_ENV.items()
        }
        return {
            "imageProvider": settings.image_provider,
            "refinerProvider": settings.refiner_provider,
            "providers": providers,
        }

    @app.post("/api/generate-ad", response_model=AdContent)
    async def generate_ad_endpoint(
        payload: AdBrief,
        settings: Settings = Depends(get_settings),
        client: httpx.AsyncClient = Depends(get_http_client),
    ) -> AdContent:
        return await generate_ad(client, settings, payload)

    @app.post("/api/generate-image", response_model=SingleImageResponse | PairedImageResponse)
    async def generate_image(
        payload: ImageRequest,
        strategy: ImageStrategy = Depends(get_image_strategy),
        client: httpx.AsyncClient = Depends(get_http_client),
    ) -> SingleImageResponse | PairedImageResponse:
        return await strategy.generate(client, payload)

    @app.post("/api/generate-video-frames", response_model=VideoFramesResponse)
    async def generate_video_frames(
        payload: VideoFramesRequest,
        strategy: SingleImageStrategy = Depends(get_frame_strategy),
        pacer: Pacer = Depends(get_pacer),
        client: httpx.AsyncClient = Depends(get_http_client),
    ) -> VideoFramesResponse:
        return await generate_frames(
            client, strategy, pacer, payload.script, niche=payload.niche, platform=payload.platform
        )

    @app.post("/api/image-chat-assistant", response_model=RefinementResponse)
    async def image_chat_assistant(
        payload: RefinerRequest,
        settings: Settings = Depends(get_settings),
        backend: RefinerBackend = Depends(get_refiner_backend),
        client: httpx.AsyncClient = Depends(get_http_client),
    ) -> RefinementResponse:
        return await refine(client, backend, payload.messages, settings.content_language)

    @app.post("/api/transcribe", response_model=TranscriptionResponse)
    async def transcribe_audio(
        audio: UploadFile | None = File(default=None),
        settings: Settings = Depends(get_settings),
        client: httpx.AsyncClient = Depends(get_http_client),
    ) -> TranscriptionResponse:
        content = await audio.read() if audio is not None else b""
        return await transcribe(
            client,
            settings,
            content,
            filename=audio.filename if audio is not None else None,
            content_type=audio.content_type if audio is not None else None,
        )

    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "adstudio.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
    )


if __name__ == "__main__":
    run()
