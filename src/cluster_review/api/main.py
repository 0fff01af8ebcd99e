from fastapi import FastAPI, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from prometheus_client import Counter, Histogram
from sqlalchemy.exc import SQLAlchemyError
import json
import logging
import time

from cluster_review.config import get_settings
from cluster_review.errors import ReviewError
from cluster_review.infrastructure import db as dbinfra
from cluster_review.api.clusters import router as clusters_router
from cluster_review.api.outliers import router as outliers_router
from cluster_review.api.lookups import router as lookups_router
from cluster_review.api.events import router as events_router

REQUESTS = Counter('api_requests_total', 'API Requests', ['endpoint', 'status'])
LATENCY = Histogram('api_request_latency_seconds', 'API request latency', ['endpoint'], buckets=(0.01,0.05,0.1,0.25,0.5,1,2,5))

app = FastAPI(title="Cluster Review API", version="0.1.0")
app.include_router(clusters_router)
app.include_router(outliers_router)
app.include_router(lookups_router)
app.include_router(events_router)


def _error_response(request: Request, exc: Exception) -> Response:
    logging.getLogger("app").error(json.dumps({
        "event": "error",
        "path": request.url.path,
        "detail": str(exc),
        "type": exc.__class__.__name__,
    }))
    return Response(content=json.dumps({"message": str(exc)}), media_type="application/json", status_code=500)


@app.exception_handler(ReviewError)
async def review_error_handler(request: Request, exc: ReviewError):
    return _error_response(request, exc)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    return _error_response(request, exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    return _error_response(request, exc)


@app.middleware("http")
async def request_metrics(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    LATENCY.labels(endpoint=endpoint).observe(time.time() - start)
    REQUESTS.labels(endpoint=endpoint, status=str(response.status_code)).inc()
    return response


@app.on_event("startup")
def startup():
    settings = get_settings()
    logger = logging.getLogger("app")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(message)s'))  # already JSON
        logger.addHandler(handler)
    logging.basicConfig(level=settings.log_level.upper())
    if settings.migrate_on_start:
        import subprocess
        try:
            subprocess.run(["alembic", "upgrade", "head"], check=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            logger.warning(json.dumps({"event": "migration_failed", "detail": str(exc)}))


@app.get("/health")
def health():
    return {"db": dbinfra.healthcheck(), "status": "ok"}


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
