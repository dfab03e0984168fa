"""
Request-scoped dependencies shared by the controllers.
"""
from fastapi import Header, HTTPException, Request, status

from channelsync.connectors import ConnectorRegistry
from channelsync.services.handshake_store import HandshakeStore


def get_registry(request: Request) -> ConnectorRegistry:
    return request.app.state.registry


def get_handshake_store(request: Request) -> HandshakeStore:
    return request.app.state.handshake_store


def get_tenant_id(x_tenant_id: str = Header(None, alias="X-Tenant-Id")) -> str:
    """Tenant comes from the platform gateway in front of this service."""
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Tenant-Id header")
    return tenant_id


def get_connector(provider: str, request: Request):
    connector = get_registry(request).get(provider)
    if connector is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider}")
    return connector
