from fastapi import APIRouter, Depends, HTTPException, Response, status

from ..dependencies import Services, get_services
from ..schemas.identity import IdentityCreate, IdentityOut

router = APIRouter(prefix="/identity", tags=["identity"])


@router.post("", response_model=IdentityOut, status_code=status.HTTP_201_CREATED)
async def create_identity(payload: IdentityCreate, services: Services = Depends(get_services)):
    """Derive (or re-derive) the pseudonymous identity for this device and name."""
    return await services.identity.derive_identity(
        payload.name,
        payload.client,
        display_name=payload.display_name,
        is_anonymous=payload.is_anonymous,
    )


@router.get("", response_model=IdentityOut)
async def get_identity(services: Services = Depends(get_services)):
    record = await services.identity.load_identity()
    if record is None:
        raise HTTPException(status_code=404, detail="No identity on this device")
    return record


@router.post("/touch", response_model=IdentityOut)
async def touch_identity(services: Services = Depends(get_services)):
    record = await services.identity.touch()
    if record is None:
        raise HTTPException(status_code=404, detail="No identity on this device")
    return record


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def clear_identity(services: Services = Depends(get_services)):
    await services.identity.clear_identity()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
