from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRouter
from loguru import logger as log
import os

from src.utils.logging_config import setup_logging
from src.services.meme.errors import MemeError
from src.services.meme.generator import MemeGenerator
from common import global_config

# Setup logging before anything else
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    generator = MemeGenerator(global_config)
    try:
        await generator.start()
        app.state.meme_generator = generator
    except MemeError as e:
        # Keep serving /ping; meme routes answer 503 until a restart succeeds
        log.error(f"Meme generator failed to start: {e!r}")
    try:
        yield
    finally:
        app.state.meme_generator = None
        await generator.aclose()


# Initialize FastAPI app
app = FastAPI(lifespan=lifespan)

# Add CORS middleware with specific allowed origins
app.add_middleware(  # type: ignore[call-overload]
    CORSMiddleware,  # type: ignore[arg-type]
    allow_origins=global_config.server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Automatically discover and include all routers
def include_all_routers():
    from src.api.routes import all_routers

    main_router = APIRouter()
    for router in all_routers:
        main_router.include_router(router)

    return main_router


app.include_router(include_all_routers())


if __name__ == "__main__":
    # Configure uvicorn to use our logging config
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        log_config=None,  # Disable uvicorn's logging config
        access_log=True,  # Enable access logs
    )
