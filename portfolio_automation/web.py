"""FastAPI JSON API over the automation and risk engine.

Engine errors are translated once, through exception handlers: validation and
configuration problems become ``400`` responses and unknown automation ids
become ``404``.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response

from .api.controllers import EngineController, build_controller
from .errors import AutomationNotFoundError, ConfigurationError, ValidationError

logger = logging.getLogger(__name__)


async def _json_payload(request: Request) -> Mapping[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:  # pragma: no cover - invalid JSON yields 400
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    if not isinstance(payload, Mapping):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload must be an object")
    return payload


async def _optional_json_payload(request: Request) -> Mapping[str, Any]:
    body = await request.body()
    if not body.strip():
        return {}
    return await _json_payload(request)


def create_app(controller: Optional[EngineController] = None) -> FastAPI:
    controller = controller or build_controller()
    app = FastAPI(title="Portfolio Automation Engine")
    app.state.controller = controller

    @app.exception_handler(AutomationNotFoundError)
    async def _not_found(request: Request, exc: AutomationNotFoundError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_404_NOT_FOUND)

    @app.exception_handler(ValidationError)
    async def _invalid(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            {"detail": str(exc), "errors": list(exc.errors)}, status_code=status.HTTP_400_BAD_REQUEST
        )

    @app.exception_handler(ConfigurationError)
    async def _misconfigured(request: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)

    def get_controller(request: Request) -> EngineController:
        return request.app.state.controller

    @app.get("/health", response_class=JSONResponse)
    async def health(controller: EngineController = Depends(get_controller)) -> JSONResponse:
        return JSONResponse(controller.health())

    @app.get("/api/automations", response_class=JSONResponse)
    async def api_list_automations(
        status_filter: Optional[str] = Query(None, alias="status"),
        user_id: Optional[str] = None,
        controller: EngineController = Depends(get_controller),
    ) -> JSONResponse:
        automations = controller.list_automations(status=status_filter, user_id=user_id)
        return JSONResponse({"automations": automations})

    @app.post("/api/automations", response_class=JSONResponse)
    async def api_create_automation(
        request: Request, controller: EngineController = Depends(get_controller)
    ) -> JSONResponse:
        payload = await _json_payload(request)
        automation = controller.create_automation(payload)
        return JSONResponse(automation, status_code=status.HTTP_201_CREATED)

    @app.get("/api/automations/{automation_id}", response_class=JSONResponse)
    async def api_get_automation(
        automation_id: str, controller: EngineController = Depends(get_controller)
    ) -> JSONResponse:
        return JSONResponse(controller.get_automation(automation_id))

    @app.delete("/api/automations/{automation_id}")
    async def api_delete_automation(
        automation_id: str, controller: EngineController = Depends(get_controller)
    ) -> Response:
        controller.delete_automation(automation_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/automations/{automation_id}/pause", response_class=JSONResponse)
    async def api_pause_automation(
        automation_id: str, controller: EngineController = Depends(get_controller)
    ) -> JSONResponse:
        return JSONResponse(controller.pause_automation(automation_id))

    @app.post("/api/automations/{automation_id}/resume", response_class=JSONResponse)
    async def api_resume_automation(
        automation_id: str, controller: EngineController = Depends(get_controller)
    ) -> JSONResponse:
        return JSONResponse(controller.resume_automation(automation_id))

    @app.post("/api/automations/{automation_id}/cancel", response_class=JSONResponse)
    async def api_cancel_automation(
        automation_id: str, controller: EngineController = Depends(get_controller)
    ) -> JSONResponse:
        return JSONResponse(controller.cancel_automation(automation_id))

    @app.post("/api/tick", response_class=JSONResponse)
    async def api_tick(request: Request, controller: EngineController = Depends(get_controller)) -> JSONResponse:
        payload = await _optional_json_payload(request)
        report = await controller.tick(payload.get("now"))
        return JSONResponse(report)

    @app.post("/api/risk/assess", response_class=JSONResponse)
    async def api_assess_risk(request: Request, controller: EngineController = Depends(get_controller)) -> JSONResponse:
        payload = await _json_payload(request)
        return JSONResponse(await controller.assess_risk(payload))

    @app.post("/api/risk/rebalance", response_class=JSONResponse)
    async def api_rebalance(request: Request, controller: EngineController = Depends(get_controller)) -> JSONResponse:
        payload = await _json_payload(request)
        return JSONResponse(await controller.recommend_rebalance(payload))

    @app.post("/api/stress", response_class=JSONResponse)
    async def api_stress(request: Request, controller: EngineController = Depends(get_controller)) -> JSONResponse:
        payload = await _json_payload(request)
        return JSONResponse(await controller.run_stress_test(payload))

    @app.post("/api/performance/metrics", response_class=JSONResponse)
    async def api_performance_metrics(
        request: Request, controller: EngineController = Depends(get_controller)
    ) -> JSONResponse:
        payload = await _json_payload(request)
        return JSONResponse(await controller.calculate_performance(payload))

    @app.post("/api/performance/projections", response_class=JSONResponse)
    async def api_projections(request: Request, controller: EngineController = Depends(get_controller)) -> JSONResponse:
        payload = await _json_payload(request)
        return JSONResponse(controller.generate_projections(payload))

    return app


__all__ = ["create_app"]
