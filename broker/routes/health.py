from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from broker.routes._deps import services_from_request, trace_id_from_request
from broker.schemas import success_envelope

router = APIRouter(tags=["health"])


@router.get("/health")
def health(request: Request):
    report = services_from_request(request).health.check()
    body = success_envelope(report, trace_id_from_request(request), message=report["status"])
    if report["status"] == "down":
        body["success"] = False
        return JSONResponse(status_code=503, content=body)
    return JSONResponse(status_code=200, content=body)


@router.get("/healthz")
def healthz(request: Request) -> dict[str, object]:
    return success_envelope({"status": "ok"}, trace_id_from_request(request))
