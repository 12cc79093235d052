"""Service-to-service calls (the bookings service reports confirmed consultancies)."""
from fastapi import APIRouter, Depends

from edumarket.schemas import ConsultancyConfirmedOut
from edumarket.security import verify_internal_secret
from edumarket.services import conversation_service

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.post("/consultancies/{consultancy_id}/confirmed", response_model=ConsultancyConfirmedOut)
async def consultancy_confirmed(consultancy_id: str):
    """Booking paid: conversations about it stop accepting context overwrites."""
    modified = await conversation_service.confirm_consultancy_purchase(consultancy_id)
    return ConsultancyConfirmedOut(consultancy_id=consultancy_id, modified_count=modified)
