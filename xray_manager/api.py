"""
Local status API, meant to be bound to the loopback interface.

    GET  /api/status        service status record
    GET  /api/health        run a health check now
    GET  /api/servers       server list with the active one marked
    GET  /api/servers/{id}  one server, 404 when unknown
    POST /api/reload        refresh the subscription
"""

from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel

from . import __version__
from .errors import DecodeFailed, FetchFailed, NoServersError, ServerNotFound, XrayManagerError
from .models import HealthInfo, Server, ServiceStatus


class ServerItem(BaseModel):
    id: str
    name: str
    display_name: str
    address: str
    port: int
    network: str
    security: str
    current: bool


class ReloadResult(BaseModel):
    servers_count: int


def create_app(service) -> FastAPI:
    app = FastAPI(title="Xray Telegram Manager", version=__version__)
    token = service.settings.api.token

    def verify_token(authorization: Optional[str] = Header(None)) -> bool:
        if not token:
            return True
        if not authorization:
            raise HTTPException(status_code=401, detail="Missing token")
        if authorization.removeprefix('Bearer ').strip() != token:
            raise HTTPException(status_code=401, detail="Invalid token")
        return True

    @app.get("/api/status", response_model=ServiceStatus)
    def get_status(_: bool = Depends(verify_token)):
        return service.status()

    @app.get("/api/health", response_model=HealthInfo)
    def get_health(_: bool = Depends(verify_token)):
        return service.perform_health_check()

    def server_item(s: Server, current: Optional[Server]) -> ServerItem:
        return ServerItem(
            id=s.id,
            name=s.name,
            display_name=service.manager.display_name(s),
            address=s.address,
            port=s.port,
            network=s.network or 'tcp',
            security=s.security or 'none',
            current=current is not None and current.id == s.id,
        )

    @app.get("/api/servers", response_model=List[ServerItem])
    def list_servers(_: bool = Depends(verify_token)):
        current = service.manager.get_current_server()
        return [server_item(s, current) for s in service.manager.get_servers()]

    @app.get("/api/servers/{server_id}", response_model=ServerItem)
    def get_server(server_id: str, _: bool = Depends(verify_token)):
        try:
            server = service.manager.get_server(server_id)
        except ServerNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        return server_item(server, service.manager.get_current_server())

    @app.post("/api/reload", response_model=ReloadResult)
    def reload(_: bool = Depends(verify_token)):
        try:
            servers = service.reload()
        except (FetchFailed, DecodeFailed, NoServersError) as e:
            raise HTTPException(status_code=502, detail=str(e))
        except XrayManagerError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return ReloadResult(servers_count=len(servers))

    return app
