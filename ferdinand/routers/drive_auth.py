from fastapi import APIRouter, Depends, Query

from ..models import User
from ..dependencies import get_current_user, get_connection_service
from ..schemas.drive import AuthUrlResponse, ConnectionStatus, DisconnectResponse
from ..services.connection_service import ConnectionService

router = APIRouter(
    tags=["Drive Connection"],
)

@router.get("/auth/url", response_model=AuthUrlResponse, summary="Get the Google Drive consent URL")
def get_auth_url(
    current_user: User = Depends(get_current_user),
    connection_service: ConnectionService = Depends(get_connection_service),
):
    return AuthUrlResponse(auth_url=connection_service.authorization_url(current_user.id))

@router.get("/auth/callback", response_model=ConnectionStatus, summary="OAuth callback from Google")
def auth_callback(
    code: str = Query(...),
    state: str = Query(...),
    connection_service: ConnectionService = Depends(get_connection_service),
):
    """
    Google redirects here after consent. The user is identified by the signed
    `state` parameter, not by a bearer token.
    """
    record = connection_service.complete_authorization(code, state)
    return connection_service.status(record.user_id)

@router.get("/status", response_model=ConnectionStatus, summary="Drive connection status for the current user")
def get_status(
    current_user: User = Depends(get_current_user),
    connection_service: ConnectionService = Depends(get_connection_service),
):
    return connection_service.status(current_user.id)

@router.delete("/disconnect", response_model=DisconnectResponse, summary="Revoke and delete Drive credentials")
def disconnect(
    current_user: User = Depends(get_current_user),
    connection_service: ConnectionService = Depends(get_connection_service),
):
    return DisconnectResponse(disconnected=connection_service.disconnect(current_user.id))
