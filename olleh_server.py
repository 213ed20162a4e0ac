"""
olleh_server.py - Olleh Gateway
FastAPI server that speaks the Ollama API in front of a generation backend
"""

import argparse
import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

import server_config as config
from backend_client import BackendError, BackendNotAvailableError, GenerationBackend, OpenAICompatibleBackend
from ollama_adapter import OllamaAdapter, RequestDecodeError, json_string, parse_body
from ollama_schemas import ListModelsResponse, ShowModelResponse, VersionResponse

# ============================================================================
# Logging Setup
# ============================================================================

logger = logging.getLogger(__name__)

_GATEWAY_LOGGERS = (__name__, "ollama_adapter", "backend_client", "server_config")


def setup_logging(level: str = config.LOG_LEVEL, log_format: str = config.LOG_FORMAT):
    """Configure logging for the gateway modules.

    Uvicorn reconfigures the root logger on startup, which can swallow our
    app-level messages, so a StreamHandler is attached directly to the
    gateway's loggers.
    """
    logging.basicConfig(level=level, format=log_format)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(log_format))
    for logger_name in _GATEWAY_LOGGERS:
        gateway_logger = logging.getLogger(logger_name)
        if not gateway_logger.handlers:
            gateway_logger.addHandler(handler)
            gateway_logger.propagate = False
        gateway_logger.setLevel(level)


# ============================================================================
# FastAPI App
# ============================================================================

def create_app(
    settings: Optional[config.ServerSettings] = None,
    backend: Optional[GenerationBackend] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Runtime settings (loaded from the environment if omitted)
        backend: Generation backend (an OpenAI-compatible upstream client if omitted)

    Returns:
        Configured FastAPI app with the adapter on app.state.adapter
    """
    if settings is None:
        settings = config.load_settings()
    if backend is None:
        backend = OpenAICompatibleBackend(
            settings.backend_url,
            timeout=settings.backend_timeout,
            health_timeout=settings.health_timeout,
            default_model=settings.default_model,
        )

    app = FastAPI(
        title="Olleh Gateway",
        version=config.GATEWAY_VERSION,
        description="Ollama-compatible API in front of an arbitrary generation backend",
    )
    adapter = OllamaAdapter(backend, settings)
    app.state.adapter = adapter
    app.state.settings = settings

    # ------------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------------

    @app.on_event("startup")
    async def startup_event():
        """Log configuration and probe the backend"""
        logger.info("=" * 60)
        logger.info("Olleh Gateway Starting...")
        logger.info("=" * 60)
        logger.info(f"  Listen: {settings.host}:{settings.port}")
        logger.info(f"  Backend: {settings.backend_url}")
        logger.info(f"  Default model: {settings.default_model}")

        issues = config.validate_settings(settings)
        if issues:
            logger.warning("Configuration notes:")
            for issue in issues:
                logger.warning(f"  - {issue}")

        try:
            await adapter.ensure_available()
            logger.info("✓ Backend is available")
        except BackendNotAvailableError:
            logger.warning("✗ Backend is not available yet - requests will fail with 503 until it is")

        logger.info("=" * 60)

    # ------------------------------------------------------------------------
    # Error Handling (Ollama errors are {"error": "<message>"})
    # ------------------------------------------------------------------------

    @app.exception_handler(RequestDecodeError)
    async def decode_error_handler(request: Request, exc: RequestDecodeError):
        logger.warning(f"{request.url.path}: bad request: {exc}")
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(BackendNotAvailableError)
    async def not_available_handler(request: Request, exc: BackendNotAvailableError):
        logger.warning(f"{request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(BackendError)
    async def backend_error_handler(request: Request, exc: BackendError):
        logger.error(f"{request.url.path}: backend failure: {exc}")
        return JSONResponse(status_code=502, content={"error": str(exc)})

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    # ------------------------------------------------------------------------
    # API Endpoints
    # ------------------------------------------------------------------------

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        """Liveness probe used by Ollama clients"""
        return "Ollama is running"

    @app.get("/api/version", response_model=VersionResponse)
    async def version():
        return VersionResponse(version=config.GATEWAY_VERSION)

    @app.post("/api/generate")
    async def generate(request: Request) -> Response:
        """Single-prompt completion, buffered JSON or NDJSON stream"""
        body = await request.body()
        try:
            return await adapter.generate_completion(body)
        except (RequestDecodeError, BackendError):
            raise
        except Exception as e:
            logger.error(f"Error in /api/generate: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/chat")
    async def chat(request: Request) -> Response:
        """Multi-turn chat, buffered JSON or NDJSON stream"""
        body = await request.body()
        try:
            return await adapter.chat_completion(body)
        except (RequestDecodeError, BackendError):
            raise
        except Exception as e:
            logger.error(f"Error in /api/chat: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/tags", response_model=ListModelsResponse, response_model_exclude_none=True)
    async def list_models():
        """List backend models"""
        return await adapter.list_models()

    @app.get("/api/show", response_model=ShowModelResponse)
    async def show_model(name: Optional[str] = None):
        return adapter.show_model(name)

    @app.post("/api/show", response_model=ShowModelResponse)
    async def show_model_post(request: Request):
        params = parse_body(await request.body())
        return adapter.show_model(json_string(params, "name") or json_string(params, "model"))

    return app


setup_logging()
app = create_app()


# ============================================================================
# Main
# ============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(description="Start the Olleh Gateway")
    parser.add_argument("--host", help=f"Host to listen on (default: {config.HOST})")
    parser.add_argument("--port", type=int, help=f"Port to listen on (default: {config.PORT})")
    parser.add_argument("--backend-url", help=f"OpenAI-compatible backend URL (default: {config.BACKEND_URL})")
    parser.add_argument("--default-model", help="Upstream model used for the 'default' model id")
    parser.add_argument("--log-level", help=f"Log level (default: {config.LOG_LEVEL})")
    args = parser.parse_args(argv)

    settings = config.load_settings(
        host=args.host,
        port=args.port,
        backend_url=args.backend_url,
        default_model=args.default_model,
        log_level=args.log_level,
    )
    setup_logging(settings.log_level, settings.log_format)

    print("=" * 60)
    print(f"Olleh Gateway v{config.GATEWAY_VERSION}")
    print("=" * 60)
    print(f"Ollama API: http://{settings.host}:{settings.port}")
    print(f"Backend: {settings.backend_url}")
    print("=" * 60)

    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
