import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .api import router as api_router
from .services import Services, build_services
from .settings import Settings, settings as default_settings
from .sse import sse_stream

def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    app = FastAPI(title="Homebridge Control Bridge", version="0.1.0")
    app.state.services = services or build_services(settings)
    app.include_router(api_router)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.on_event("startup")
    async def on_start():
        await app.state.services.start()

    @app.on_event("shutdown")
    async def on_stop():
        await app.state.services.stop()

    @app.get("/api/v1/status/stream")
    async def stream(request: Request):
        return sse_stream(request.app.state.services.broadcaster.register())

    @app.get("/")
    def root(request: Request):
        svc: Services = request.app.state.services
        return {
            "name": "hb-control-bridge",
            "status": "ok",
            "control_enabled": svc.settings.CONTROL_ENABLED,
            "entities": len(svc.registry.list_entities()),
            "last_refresh_at": svc.registry.last_refresh_at,
            "scheduled_jobs": len(svc.scheduler.list_scheduled()),
        }

    return app

def run() -> None:
    import uvicorn
    uvicorn.run("hbcontrol.main:create_app", factory=True, host="0.0.0.0", port=8787)
