"""
HTTP server for the knowledge base API.

Run with `python -m persona_kb.server` (or the `persona-kb-server` script).
Indexing is queued for the worker unless `--inline-indexing` is given.
"""

import argparse
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger

from .kb_routes import init_kb_routes
from .log_config import init_logger
from .service_context import ServiceContext


def create_app(context: Optional[ServiceContext] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        context: Pre-built services (tests pass their own); created from the
            environment when omitted

    Returns:
        FastAPI app whose lifespan initializes and closes the services
    """
    context = context or ServiceContext.create()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await context.initialize()
        logger.info("🚀 Knowledge base API ready")
        try:
            yield
        finally:
            await context.close()
            logger.info("👋 Knowledge base API stopped")

    app = FastAPI(title="Persona Knowledge Base", lifespan=lifespan)
    app.state.context = context
    app.include_router(init_kb_routes(context))

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def main() -> None:
    parser = argparse.ArgumentParser(description="Persona knowledge base API server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--log-level", default="INFO", help="Console log level")
    parser.add_argument(
        "--inline-indexing",
        action="store_true",
        help="Index uploads in the request instead of queueing them for the worker",
    )
    args = parser.parse_args()

    init_logger(args.log_level)
    context = ServiceContext.create(use_job_queue=not args.inline_indexing)
    uvicorn.run(create_app(context), host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
