from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.env import env_list
from core.logging import setup_logging
from web import routers
from web.middleware.auth_context import auth_context_middleware

setup_logging()

app = FastAPI(
    title="Financial Playground API",
    description="Streams AI-authored financial reports section by section over Server-Sent Events.",
    version="0.1.0",
)

origins = env_list("CORS_ALLOW_ORIGINS", ["http://localhost:3000"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Generation-Id", "X-RateLimit-Remaining"],
)


@app.middleware("http")
async def attach_auth_context(request: Request, call_next):
    """Decode bearer tokens into request.state.user."""
    return await auth_context_middleware(request, call_next)


@app.get("/", summary="Health Check", tags=["Default"])
def health_check():
    return {"status": "ok", "message": "Financial Playground API is running."}


@app.get("/metrics", include_in_schema=False)
def prometheus_metrics():
    """Expose Prometheus metrics."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(routers.health.router)
app.include_router(routers.generation.router, prefix="/api/v1")
