"""
MetricStore HTTP API

FastAPI application exposing the query API, the push gateway and status endpoints.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from ..errors import ExecutionError, ParseError
from ..timeutil import parse_duration

logger = logging.getLogger("MetricStore")


class ApiResponse(BaseModel):
    """Successful API envelope"""
    status: str = "success"
    data: Any = None
    warnings: Optional[List[str]] = None


class ErrorResponse(BaseModel):
    """Failed API envelope"""
    status: str = "error"
    errorType: str
    error: str


class PushResponse(BaseModel):
    """Push gateway write acknowledgement"""
    job: str
    instance: str
    samples: int
    pushed_at: float
    ttl_seconds: float
    invalid_lines: int = 0


def _error(status_code: int, error_type: str, message: str) -> JSONResponse:
    body = ErrorResponse(errorType=error_type, error=message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _success(data: Any, warnings: Optional[List[str]] = None) -> Dict[str, Any]:
    return ApiResponse(data=data, warnings=warnings).model_dump(exclude_none=True)


def _finite(value: float, name: str, text: str) -> float:
    if not math.isfinite(value):
        raise ParseError(f"invalid parameter {name!r}: {text!r} is not a finite number")
    return value


def parse_time(value: Optional[str], name: str) -> Optional[float]:
    """Unix seconds or RFC 3339 timestamp"""
    if value is None or value == "":
        return None
    try:
        return _finite(float(value), name, value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        raise ParseError(f"invalid parameter {name!r}: cannot parse {value!r} to a valid timestamp")


def parse_step(value: str, name: str = "step") -> float:
    """Seconds as a float or a duration string"""
    try:
        return _finite(float(value), name, value)
    except ValueError:
        pass
    try:
        return parse_duration(value)
    except ValueError:
        raise ParseError(f"invalid parameter {name!r}: cannot parse {value!r} to a valid duration")


class MetricStoreAPI:
    """
    MetricStore REST API

    Provides HTTP endpoints for:
    - Instant and range queries
    - Push gateway writes and deletes
    - Rules, alerts, targets and probes
    - Status and health
    """

    def __init__(self, store):
        """
        Initialize API with a MetricStore.

        Args:
            store: Instance of MetricStore
        """
        self.store = store
        self.app = FastAPI(
            title="MetricStore API",
            description="Time series ingestion, query and alerting",
            version="1.0.0"
        )

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._register_error_handlers()
        self._register_routes()

    def _register_error_handlers(self):
        """Map engine errors onto API error envelopes"""

        @self.app.exception_handler(ParseError)
        async def parse_error(request: Request, exc: ParseError):
            return _error(400, "bad_data", str(exc))

        @self.app.exception_handler(ExecutionError)
        async def execution_error(request: Request, exc: ExecutionError):
            return _error(422, "execution", str(exc))

        @self.app.exception_handler(RequestValidationError)
        async def validation_error(request: Request, exc: RequestValidationError):
            missing = ", ".join(".".join(str(p) for p in e.get("loc", ())) for e in exc.errors())
            return _error(400, "bad_data", f"invalid or missing parameter(s): {missing}")

    def _register_routes(self):
        """Register API routes"""
        store = self.store

        @self.app.get("/health")
        async def health():
            """Health check"""
            return {
                "status": "degraded" if store.storage.degraded else "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        # Query API

        @self.app.get("/api/v1/query")
        async def instant_query(
            query: str = Query(..., min_length=1),
            time: Optional[str] = None
        ):
            """Evaluate an instant query"""
            at = parse_time(time, "time")
            result = await run_in_threadpool(store.query_engine.evaluate, query, at)
            return result.to_dict()

        @self.app.get("/api/v1/query_range")
        async def range_query(
            query: str = Query(..., min_length=1),
            start: str = Query(...),
            end: str = Query(...),
            step: str = Query(...)
        ):
            """Evaluate a range query"""
            start_s = parse_time(start, "start")
            end_s = parse_time(end, "end")
            step_s = parse_step(step)
            result = await run_in_threadpool(
                store.query_engine.evaluate_range, query, start_s, end_s, step_s
            )
            return result.to_dict()

        @self.app.get("/api/v1/labels")
        async def label_names():
            """All label names"""
            return _success(store.index.label_names())

        @self.app.get("/api/v1/label/{name}/values")
        async def label_values(name: str):
            """Values of one label"""
            return _success(store.index.label_values(name))

        # Push gateway

        async def push(job: str, instance: str, request: Request, ttl: Optional[str]):
            # undecodable bytes spoil only their own lines
            body = (await request.body()).decode("utf-8", errors="replace")
            ttl_s = parse_step(ttl, "ttl") if ttl else None
            group = store.pushgateway.push(job, instance, body, ttl=ttl_s)
            return PushResponse(**group.to_dict())

        @self.app.put("/metrics/job/{job}/instance/{instance}", response_model=PushResponse)
        async def push_put(job: str, instance: str, request: Request, ttl: Optional[str] = None):
            """Replace the pushed group for job/instance"""
            return await push(job, instance, request, ttl)

        @self.app.post("/metrics/job/{job}/instance/{instance}", response_model=PushResponse)
        async def push_post(job: str, instance: str, request: Request, ttl: Optional[str] = None):
            """Replace the pushed group for job/instance"""
            return await push(job, instance, request, ttl)

        @self.app.put("/metrics/job/{job}", response_model=PushResponse)
        async def push_job_put(job: str, request: Request, ttl: Optional[str] = None):
            """Replace the pushed group for a job without instance"""
            return await push(job, "", request, ttl)

        @self.app.post("/metrics/job/{job}", response_model=PushResponse)
        async def push_job_post(job: str, request: Request, ttl: Optional[str] = None):
            """Replace the pushed group for a job without instance"""
            return await push(job, "", request, ttl)

        @self.app.delete("/metrics/job/{job}/instance/{instance}")
        async def push_delete(job: str, instance: str):
            """Delete the pushed group for job/instance"""
            return _success({"deleted": store.pushgateway.delete(job, instance)})

        @self.app.delete("/metrics/job/{job}")
        async def push_job_delete(job: str):
            """Delete the pushed group for a job without instance"""
            return _success({"deleted": store.pushgateway.delete(job, "")})

        @self.app.get("/metrics", response_class=PlainTextResponse)
        async def pushed_metrics():
            """Push gateway content in exposition format"""
            return PlainTextResponse(
                store.pushgateway.render(),
                media_type="text/plain; version=0.0.4"
            )

        # Status surfaces

        @self.app.get("/api/v1/rules")
        async def rules():
            """Rule groups with per-rule health"""
            return _success({"groups": [g.to_dict() for g in store.evaluator.groups.values()]})

        @self.app.get("/api/v1/alerts")
        async def alerts():
            """Pending and firing alerts"""
            return _success({"alerts": [a.to_dict() for a in store.evaluator.get_alerts()]})

        @self.app.get("/api/v1/targets")
        async def targets():
            """Scrape targets and their health"""
            return _success({"activeTargets": [t.to_dict() for t in store.gateway.targets()]})

        @self.app.get("/api/v1/probes")
        async def probes():
            """Synthetic probes and their last results"""
            return _success({"probes": [p.to_dict() for p in store.probes.probes()]})

        @self.app.get("/api/v1/status")
        async def status():
            """Engine status, including storage degraded mode"""
            return _success(store.status())


def create_api_server(store, host: str = "0.0.0.0", port: int = 9090):
    """
    Create and configure the MetricStore API server.

    Args:
        store: Instance of MetricStore
        host: Host to bind to
        port: Port to listen on

    Returns:
        Tuple of (MetricStoreAPI, uvicorn server config)
    """
    api = MetricStoreAPI(store)

    return api, {
        "app": api.app,
        "host": host,
        "port": port,
        "log_level": "info"
    }
