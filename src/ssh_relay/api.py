"""HTTP interface for the relay orchestrator.

Exposes the polling endpoint pollers read on a fixed interval and the
control operations. Every control call returns an acknowledgement as soon as
the work is scheduled, never the eventual outcome.
"""

from datetime import datetime
from typing import Any

from fastapi import Body, FastAPI, HTTPException
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .common.exceptions import InvalidTunnelConfigError
from .common.logging import get_logger
from .tunnels import TunnelConfig, TunnelRegistry

logger = get_logger(__name__)


class TunnelNameRequest(BaseModel):
    """Body of disconnect and cancel requests."""

    model_config = ConfigDict(str_strip_whitespace=True)

    tunnel_name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("tunnelName", "tunnel_name", "name"),
    )


def _tunnel_name(body: dict[str, Any] | None) -> str:
    try:
        return TunnelNameRequest.model_validate(body or {}).tunnel_name
    except ValidationError as e:
        raise HTTPException(status_code=400, detail="tunnelName is required") from e


def create_app(registry: TunnelRegistry) -> FastAPI:
    """Build the FastAPI application bound to a registry.

    Args:
        registry: Orchestrator the routes delegate to

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(title="SSH Relay", version="0.1.0")
    app.state.registry = registry

    @app.get("/status")
    def status_all() -> dict[str, dict[str, Any]]:
        return registry.store.payload()

    @app.get("/status/{name}")
    def status(name: str) -> dict[str, Any]:
        return {"name": name, "status": registry.status(name).to_payload()}

    @app.post("/connect")
    def connect(record: dict[str, Any] = Body(...)) -> dict[str, Any]:
        try:
            config = registry.validate(record)
        except InvalidTunnelConfigError as e:
            logger.warning("Rejected connect request", error=str(e))
            raise HTTPException(status_code=400, detail=str(e)) from e

        record_status = registry.connect(config)
        return {
            "message": "Connection request received",
            "tunnelName": config.name,
            "status": record_status.to_payload(),
        }

    @app.post("/disconnect")
    def disconnect(body: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
        name = _tunnel_name(body)
        record_status = registry.disconnect(name)
        return {
            "message": "Disconnect request received",
            "tunnelName": name,
            "status": record_status.to_payload(),
        }

    @app.post("/cancel")
    def cancel(body: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
        name = _tunnel_name(body)
        record_status = registry.cancel(name)
        return {
            "message": "Cancel request received",
            "tunnelName": name,
            "status": record_status.to_payload(),
        }

    @app.put("/tunnel/{name}")
    def update_tunnel(name: str, record: dict[str, Any] = Body(...)) -> dict[str, Any]:
        try:
            config = registry.validate({**record, "name": name})
        except InvalidTunnelConfigError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        record_status = registry.update(config)
        return {
            "message": "Tunnel configuration updated",
            "name": name,
            "status": record_status.to_payload(),
        }

    @app.delete("/tunnel/{name}")
    def delete_tunnel(name: str) -> dict[str, str]:
        registry.remove(name)
        return {"message": "Tunnel deleted", "name": name}

    @app.get("/tunnels")
    def tunnels() -> list[dict[str, Any]]:
        configs: list[TunnelConfig] = registry.configs()
        return [config.to_public() for config in configs]

    @app.get("/health")
    def health() -> dict[str, Any]:
        counts = registry.health()
        return {
            "status": "healthy",
            "activeTunnels": counts["connected"],
            "workers": counts["workers"],
            "timestamp": datetime.now().isoformat(),
        }

    return app
