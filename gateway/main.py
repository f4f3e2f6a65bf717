from fastapi import FastAPI

from gateway.config import settings
from gateway.logging_config import get_logger, setup_logging
from gateway.routers import admin, message
from gateway.services.container import ResilienceContainer

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="GovConnect Gateway",
    description="Inbound message resilience for the GovConnect citizen chat service",
    version="0.1.0",
)

app.include_router(message.router)
app.include_router(admin.router)


@app.on_event("startup")
async def start_services() -> None:
    container = getattr(app.state, "container", None)
    if container is None:
        container = ResilienceContainer.from_settings(settings)
        app.state.container = container
    container.start()


@app.on_event("shutdown")
async def stop_services() -> None:
    container = getattr(app.state, "container", None)
    if container is None:
        return
    await container.shutdown()


@app.get("/health")
async def health():
    return {"status": "ok"}
