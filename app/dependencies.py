# app/dependencies.py
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.core import security
from app.core.config import settings
from app.core.errors import Forbidden
from app.models.device_models import DeviceInDB
from app.models.user_models import TokenPayload
from app.services.container import Services

# Parent tokens are issued by the account service; tokenUrl is informational only
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/token")


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_user_payload(token: str = Depends(oauth2_scheme)) -> TokenPayload:
    """
    Decode and validate the bearer token.
    Raises 401 if the token is invalid or expired.
    """
    payload = security.decode_token(token)
    if not payload or not payload.sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_parent_id(payload: TokenPayload = Depends(get_current_user_payload)) -> str:
    if payload.type != "access":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token type")
    return str(payload.sub)


async def get_current_device(
    x_device_id: str = Header(..., alias="X-Device-Id"),
    x_device_token: str = Header(..., alias="X-Device-Token"),
    services: Services = Depends(get_services),
) -> DeviceInDB:
    """Device requests carry the id and the token handed out when the device was linked."""
    device = await services.devices.authenticate(x_device_id, x_device_token)
    if device is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid device credentials",
        )
    return device


def ensure_same_device(device: DeviceInDB, device_id: str) -> None:
    """A device may only act on its own record."""
    if device.deviceId != device_id:
        raise Forbidden("Device credentials do not match the requested device")
