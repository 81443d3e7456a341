"""
HTTP surface of the inference pipeline.

Usage:
    uvicorn src.pipeline.api:app --host 0.0.0.0 --port 8080
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.errors import PipelineError
from src.core.settings import Settings

from .dto import AnalyzeBody
from .service import AnalysisPipeline

logger = structlog.get_logger(__name__)


def create_app(pipeline: AnalysisPipeline | None = None) -> FastAPI:
    """Build the application; without a pipeline one is wired from the environment"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "pipeline", None) is None:
            app.state.pipeline = AnalysisPipeline.from_settings(Settings.from_env())
        logger.info(
            "Inference pipeline API started",
            models=app.state.pipeline.registry.snapshot().names(),
        )
        try:
            yield
        finally:
            await app.state.pipeline.aclose()
            logger.info("Inference pipeline API stopped")

    app = FastAPI(title="feature-parity-inference", version="0.1.0", lifespan=lifespan)
    app.state.pipeline = pipeline

    @app.exception_handler(PipelineError)
    async def pipeline_error(request: Request, exc: PipelineError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/v1/models")
    def list_models(request: Request):
        registry = request.app.state.pipeline.registry.snapshot()
        return {"models": [info.to_dict() for info in registry.models()]}

    @app.get("/v1/models/{name}/health")
    async def model_health(name: str, request: Request):
        health = await request.app.state.pipeline.proxy.health(name)
        return health.to_dict()

    @app.post("/v1/models/reload")
    def reload_models(request: Request):
        try:
            names = request.app.state.pipeline.reload_models(Settings.from_env().model_settings)
        except ValueError as e:
            return JSONResponse(
                status_code=400,
                content={"error": "invalid_model_settings", "message": str(e)},
            )
        return {"models": names}

    @app.post("/v1/analyze")
    async def analyze(body: AnalyzeBody, request: Request):
        response = await request.app.state.pipeline.analyze(body.to_request())
        return response.to_dict()

    return app


app = create_app()
