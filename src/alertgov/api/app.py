from __future__ import annotations

import logging
from datetime import datetime
from time import perf_counter
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from alertgov import __version__
from alertgov.errors import AlertNotFoundError, ConfigError
from alertgov.service import GovernanceService

logger = logging.getLogger(__name__)


class EvaluateRequest(BaseModel):
    group_ids: Optional[List[str]] = None


class GroupMetaRequest(BaseModel):
    severity_scope: Optional[str] = None
    strategy: Optional[str] = None


class WeightsUpdate(BaseModel):
    w1: Optional[float] = None
    w2: Optional[float] = None
    w3: Optional[float] = None
    w4: Optional[float] = None
    w5: Optional[float] = None
    actor: str = "operator"


class MetricsInput(BaseModel):
    ack_rate: float = Field(ge=0.0, le=1.0)
    escalation_effectiveness: float = Field(ge=0.0, le=1.0)
    false_suppression_rate: float = Field(ge=0.0, le=1.0)
    suspected_false_rate: float = Field(ge=0.0, le=1.0)
    re_noise_rate: float = Field(ge=0.0, le=1.0)


class AlertIn(BaseModel):
    alert_id: str
    severity: str = "medium"
    timestamp: Optional[datetime] = None
    dedup_group: Optional[str] = None
    message: Optional[str] = None


class AckRequest(BaseModel):
    actor: str = "system"
    note: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)


class ForceEscalationRequest(BaseModel):
    actor: str = "operator"
    note: Optional[str] = None


def create_app(service: GovernanceService) -> FastAPI:
    """Build the HTTP surface over an existing service instance."""
    app = FastAPI(title="alertgov API", version=__version__)
    app.state.service = service
    req_count = service.metrics.requests_total
    req_duration = service.metrics.http_request_duration_seconds

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        req_count.labels(path=path).inc()
        req_duration.labels(path=path).observe(perf_counter() - start)
        return response

    @app.exception_handler(AlertNotFoundError)
    async def _not_found(_request: Request, exc: AlertNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc), "alert_id": exc.alert_id})

    @app.exception_handler(ConfigError)
    async def _bad_config(_request: Request, exc: ConfigError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=service.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/status")
    def status() -> Dict[str, Any]:
        return service.status()

    v1 = APIRouter(prefix="/v1")

    # Suppression
    @v1.post("/suppression/evaluate")
    def evaluate(req: Optional[EvaluateRequest] = None) -> Dict[str, Any]:
        return service.evaluate_suppression_window(req.group_ids if req else None).as_dict()

    @v1.get("/suppression/metrics")
    def suppression_metrics() -> Dict[str, Any]:
        return service.get_suppression_metrics()

    @v1.get("/suppression/transitions")
    def transitions(limit: int = 50, group_id: Optional[str] = None) -> Dict[str, Any]:
        items = service.recent_transitions(limit, group_id)
        return {"transitions": [t.as_dict() for t in items]}

    @v1.get("/suppression/{group_id}")
    def suppression_state(group_id: str) -> Dict[str, Any]:
        return service.get_suppression_state(group_id)

    @v1.put("/suppression/{group_id}/meta")
    def group_meta(group_id: str, req: GroupMetaRequest) -> Dict[str, Any]:
        service.engine.set_group_meta(group_id, severity_scope=req.severity_scope, strategy=req.strategy)
        return service.get_suppression_state(group_id)

    # Weights
    @v1.get("/weights")
    def get_weights() -> Dict[str, Any]:
        return {
            "weights": service.weights.as_dict(),
            "controller": service.controller.state_snapshot()["controller"],
        }

    @v1.put("/weights")
    def put_weights(req: WeightsUpdate) -> Dict[str, Any]:
        partial = {k: v for k, v in req.model_dump(exclude={"actor"}).items() if v is not None}
        if not partial:
            raise HTTPException(status_code=400, detail="no weight components given")
        if any(v < 0 for v in partial.values()):
            raise HTTPException(status_code=400, detail="weights must be non-negative")
        return {"weights": service.set_weights(partial, actor=req.actor).as_dict()}

    @v1.post("/weights/adjust")
    def adjust(req: MetricsInput) -> Dict[str, Any]:
        return service.compute_adjustment(req.model_dump()).as_dict()

    @v1.post("/weights/cycle")
    def tuning_cycle() -> Dict[str, Any]:
        return service.run_tuning_cycle().as_dict()

    @v1.get("/weights/log")
    def weights_log(limit: int = 50) -> Dict[str, Any]:
        return {"entries": service.controller.adjustment_log(limit)}

    @v1.post("/persistence/prune")
    def prune() -> Dict[str, Any]:
        return service.prune_history()

    # Escalation
    @v1.post("/escalations/sweep")
    def sweep() -> Dict[str, Any]:
        return service.run_escalation_sweep().as_dict()

    @v1.get("/escalations/metrics")
    def escalation_metrics(window_ms: int = 24 * 3600 * 1000) -> Dict[str, Any]:
        return service.get_escalation_metrics(window_ms)

    @v1.post("/escalations/{alert_id}/force")
    def force(alert_id: str, req: Optional[ForceEscalationRequest] = None) -> Dict[str, Any]:
        req = req or ForceEscalationRequest()
        return service.force_escalate(alert_id, actor=req.actor, note=req.note).as_dict()

    # Alerts and acknowledgements
    @v1.post("/alerts", status_code=201)
    def register_alert(req: AlertIn) -> Dict[str, Any]:
        alert = service.register_alert(
            req.alert_id, req.severity, req.timestamp, req.dedup_group, req.message
        )
        return alert.as_dict()

    @v1.get("/alerts/metrics")
    def ack_metrics(window_ms: int = 24 * 3600 * 1000) -> Dict[str, Any]:
        return service.get_ack_metrics(window_ms)

    @v1.post("/alerts/{alert_id}/ack")
    def ack(alert_id: str, req: Optional[AckRequest] = None) -> Dict[str, Any]:
        req = req or AckRequest()
        return service.ack_alert(alert_id, actor=req.actor, note=req.note, meta=req.meta).as_dict()

    @v1.delete("/alerts/{alert_id}/ack")
    def unack(alert_id: str) -> Dict[str, Any]:
        res = service.unack_alert(alert_id)
        return {"alert_id": res.alert_id, "changed": res.changed}

    @v1.get("/alerts/{alert_id}")
    def alert_state(alert_id: str) -> Dict[str, Any]:
        alert = service.alert_store.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return {
            "alert": alert.as_dict(),
            "ack": service.get_ack_state([alert_id])[alert_id],
            "escalation": service.get_escalation_state([alert_id])[alert_id],
        }

    app.include_router(v1)
    return app
