import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from gateway.schemas import (
    HistoryResponse,
    LoginCompleteRequest,
    LoginCompleteResponse,
    LogoutResponse,
    RefreshResponse,
    ServiceInfo,
    UsageSnapshot,
)
from orchestrator import Orchestrator, build_default_registry
from providers.base import LoginNotSupported, ServiceAdapter
from providers.errors import UsageError
from providers.login import LoginPrompt
from state.credentials import CredentialStore
from state.history import UsageHistory
from state.mongo import close_mongo, history_enabled, init_mongo
from state.settings import SettingsStore

logger = logging.getLogger(__name__)

app = FastAPI(title="QuotaWatch Gateway", version="0.1.0")


async def poll_loop(orchestrator: Orchestrator) -> None:
    """Refresh every enabled service, then sleep for the configured interval (minutes)."""
    while True:
        try:
            await orchestrator.refresh_all()
        except Exception as e:  # pragma: no cover - refresh_all absorbs adapter failures
            logger.exception("Refresh cycle failed: %s", e)
        interval = orchestrator.settings.get_refresh_interval()
        await asyncio.sleep(max(interval, 0.1) * 60)


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = CredentialStore()
    settings = SettingsStore()
    registry = build_default_registry(store=store, settings=settings)

    history = None
    if history_enabled():
        try:
            _, db = await init_mongo()
            history = UsageHistory(db=db)
        except Exception as e:
            logger.warning("Usage history disabled; MongoDB unavailable: %s", e)

    orchestrator = Orchestrator(registry, settings, history=history)
    app.state.orchestrator = orchestrator

    if os.getenv("QUOTAWATCH_POLL", "1") != "0":
        app.state.poller = asyncio.create_task(poll_loop(orchestrator))

    logger.info("Gateway initialized with %d services", len(registry.adapters()))


@app.on_event("shutdown")
async def shutdown_event() -> None:
    poller: Optional[asyncio.Task] = getattr(app.state, "poller", None)
    if poller is not None:
        poller.cancel()
    orchestrator: Optional[Orchestrator] = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.registry.aclose()
    try:
        await close_mongo()
    except Exception:  # pragma: no cover
        pass


def _orchestrator() -> Orchestrator:
    return app.state.orchestrator


def _adapter_or_404(service_id: str) -> ServiceAdapter:
    adapter = _orchestrator().get_service(service_id)
    if adapter is None:
        raise HTTPException(status_code=404, detail=f"Unknown service: {service_id}")
    return adapter


def _usage_json(model) -> JSONResponse:
    return JSONResponse(status_code=200, content=json.loads(model.model_dump_json()))


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}


@app.get("/v1/services")
async def list_services():
    orch = _orchestrator()
    enabled = set(orch.settings.get_enabled_services())
    result = []
    for identity in orch.list_services():
        adapter = orch.get_service(identity.id)
        result.append(
            ServiceInfo(
                id=identity.id,
                display_name=identity.display_name,
                enabled=identity.id in enabled,
                supports_login=adapter.supports_login,
                dashboard_url=adapter.dashboard_url,
                status_page_url=adapter.status_page_url,
            ).model_dump()
        )
    return {"services": result}


@app.get("/v1/services/{service_id}", response_model=ServiceInfo)
async def get_service(service_id: str):
    adapter = _adapter_or_404(service_id)
    try:
        available = await adapter.is_available()
    except Exception as e:
        logger.warning("Availability probe failed for %s: %s", service_id, e)
        available = False
    return ServiceInfo(
        id=adapter.service_id,
        display_name=adapter.display_name,
        enabled=service_id in _orchestrator().settings.get_enabled_services(),
        available=available,
        supports_login=adapter.supports_login,
        dashboard_url=adapter.dashboard_url,
        status_page_url=adapter.status_page_url,
    )


@app.post("/v1/refresh")
async def refresh_all():
    orch = _orchestrator()
    snapshot = await orch.refresh_all()
    enabled = orch.settings.get_enabled_services()
    return _usage_json(RefreshResponse(refreshed=enabled, services=dict(snapshot)))


@app.post("/v1/services/{service_id}/refresh")
async def refresh_one(service_id: str):
    usage = await _orchestrator().refresh_one(service_id)
    if usage is None:
        raise HTTPException(status_code=404, detail=f"Unknown service: {service_id}")
    return _usage_json(usage)


@app.get("/v1/usage")
async def latest_usage():
    return _usage_json(UsageSnapshot(services=dict(_orchestrator().get_latest_usage())))


@app.get("/v1/usage/{service_id}")
async def usage_for(service_id: str):
    usage = _orchestrator().get_usage(service_id)
    if usage is None:
        raise HTTPException(status_code=404, detail=f"No usage fetched yet for {service_id}")
    return _usage_json(usage)


@app.get("/v1/usage/{service_id}/history")
async def usage_history(service_id: str, since: Optional[datetime] = None, limit: int = 500):
    history = _orchestrator().history
    if history is None:
        raise HTTPException(status_code=404, detail="Usage history is not enabled")
    points = await history.recent(service_id, since=since, limit=limit)
    return _usage_json(HistoryResponse(service_id=service_id, since=since, points=points))


@app.post("/v1/services/{service_id}/login", response_model=LoginPrompt)
async def start_login(service_id: str):
    adapter = _adapter_or_404(service_id)
    try:
        return await adapter.start_login()
    except LoginNotSupported as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UsageError as e:
        logger.warning("Could not start %s login: %s", service_id, e)
        raise HTTPException(status_code=502, detail=str(e))


@app.post("/v1/services/{service_id}/login/complete", response_model=LoginCompleteResponse)
async def complete_login(service_id: str, body: LoginCompleteRequest):
    adapter = _adapter_or_404(service_id)
    payload = body.model_dump(exclude_none=True)
    try:
        credential = await adapter.complete_login(payload)
    except LoginNotSupported as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UsageError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return LoginCompleteResponse(service_id=service_id, cookie_names=[c.name for c in credential.cookies])


@app.delete("/v1/services/{service_id}/session", response_model=LogoutResponse)
async def logout(service_id: str):
    adapter = _adapter_or_404(service_id)
    removed = await adapter.logout()
    logger.info("Logged out of %s (stored session removed=%s)", service_id, removed)
    return LogoutResponse(service_id=service_id, removed=removed)
