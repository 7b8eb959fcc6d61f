"""
StateFlow - FastAPI Application Entry Point.

Serves the state graph engine over HTTP and WebSocket.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from stateflow.config import settings
from stateflow.api.routes import graph, tools, websocket
from stateflow.storage.memory import graph_storage, run_storage
from stateflow.workflows.agent_loop import AGENT_LOOP_GRAPH_ID, register_agent_workflow


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await register_agent_workflow()

    yield

    logger.info("Shutting down...")


app = FastAPI(
    title=settings.APP_NAME,
    description="""
## State Graph Engine API

Run computations as a sequence of steps over a shared, typed state.

### Features
- **State schema**: every field declares a reducer (replace, append, merge, add)
- **Nodes**: registered handlers or tools returning partial updates
- **Edges**: fixed or conditional, with cycles allowed
- **Streaming**: `values` (full state) or `updates` (per-node deltas)
- **Control**: step limits and cancellation of background runs

### Quick Start
1. Create a graph: `POST /graph/create`
2. Run it: `POST /graph/run`
3. Poll a background run: `GET /graph/state/{run_id}`
4. Stream live: `WS /ws/run/{graph_id}`, or watch an existing run: `WS /ws/subscribe/{run_id}`

### Demo Workflow
A pre-registered agent/tools loop is available with ID: `agent-loop-demo`
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(graph.router)
app.include_router(tools.router)
app.include_router(websocket.router)


# ============================================================
# Root Endpoints
# ============================================================

@app.get("/", tags=["Root"])
async def root():
    """API root - returns basic info and links."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "description": "A state graph engine for agent workflows",
        "docs": "/docs",
        "redoc": "/redoc",
        "endpoints": {
            "graphs": "/graph",
            "tools": "/tools",
            "websocket_run": "/ws/run/{graph_id}",
            "websocket_subscribe": "/ws/subscribe/{run_id}",
        },
        "demo_workflow": AGENT_LOOP_GRAPH_ID,
    }


@app.get("/health", tags=["Root"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "graphs_count": len(graph_storage),
        "runs_count": len(run_storage),
    }


# ============================================================
# Error Handlers
# ============================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.exception(f"Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "detail": str(exc) if settings.DEBUG else "An unexpected error occurred",
        },
    )
