from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calmirror.config_manager import ConfigManager, mask_secrets
from calmirror.models import ConfigError
from calmirror.scheduler import SyncScheduler
from calmirror.state_store import LAST_RUN_STATUS, LAST_SUCCESSFUL_SYNC_TS, StateStore
from calmirror.sync_engine import SyncEngine

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_STATE_PATH = "data/state.db"


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRunRequest(BaseModel):
    subscription_ids: list[str] = Field(default_factory=list)
    wait: bool = False


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _subscription_status(context: AppContext) -> list[dict[str, Any]]:
    config = context.config_manager.load()
    states = context.state_store.subscription_states()
    output: list[dict[str, Any]] = []
    for subscription in config.subscriptions:
        state = states.get(subscription.id, {})
        output.append(
            {
                "id": subscription.id,
                "enabled": subscription.enabled,
                "source_kind": subscription.source.kind,
                "target_calendar_id": subscription.target_calendar_id or config.destination.calendar_id,
                "last_run_status": state.get(LAST_RUN_STATUS),
                "last_successful_sync_ts": state.get(LAST_SUCCESSFUL_SYNC_TS),
                "mapped_events": len(context.state_store.list_mappings(subscription.id)),
            }
        )
    return output


def create_app(
    config_path: str | None = None,
    state_path: str | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    config_path = config_path or os.getenv("CALMIRROR_CONFIG_PATH", DEFAULT_CONFIG_PATH)
    state_path = state_path or os.getenv("CALMIRROR_STATE_PATH", DEFAULT_STATE_PATH)
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="calmirror admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        if start_scheduler:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        scheduler = app.state.context.scheduler
        return {"status": "ok", "scheduler_running": scheduler.is_running, "sync_busy": scheduler.is_busy}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload, keep_masked_secrets=True)
        except (ConfigError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": mask_secrets(updated.to_dict())}

    @app.post("/api/sync/run")
    def trigger_sync(request: SyncRunRequest | None = None) -> dict[str, Any]:
        request = request or SyncRunRequest()
        if request.wait or request.subscription_ids:
            if app.state.context.scheduler.is_busy:
                raise HTTPException(status_code=409, detail="a sync batch is already running")
            result = app.state.context.sync_engine.run_once(
                trigger="manual",
                subscription_ids=request.subscription_ids or None,
            )
            return {"message": "sync completed", "result": result.to_dict()}
        accepted = app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered" if accepted else "sync already running", "accepted": accepted}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/subscriptions/status")
    def subscriptions_status() -> dict[str, Any]:
        return {"subscriptions": _subscription_status(app.state.context)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/debug/runs/{run_id}")
    def debug_run(run_id: int, limit: int = 500) -> dict[str, Any]:
        runs = app.state.context.state_store.recent_sync_runs(limit=200)
        run = next((item for item in runs if int(item.get("id", 0)) == int(run_id)), None)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        events = app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)
        return {"run": run, "events": events}

    return app
