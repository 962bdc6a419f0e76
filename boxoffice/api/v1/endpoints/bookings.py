"""
Booking endpoints
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status

from boxoffice.api.deps import get_container, get_current_user_id
from boxoffice.container import Container
from boxoffice.schemas.booking import BookingCreate, BookingResponse

router = APIRouter()


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    user_id: UUID = Depends(get_current_user_id),
    container: Container = Depends(get_container)
):
    """
    Reserve tickets in a section and open a PENDING booking
    """
    return await container.booking_service.create_booking(
        user_id=user_id,
        showtime_id=booking_data.showtime_id,
        section_id=booking_data.section_id,
        quantity=booking_data.quantity,
        payment_method=booking_data.payment_method
    )


@router.get("", response_model=List[BookingResponse])
async def list_bookings(
    user_id: UUID = Depends(get_current_user_id),
    container: Container = Depends(get_container)
):
    return await container.booking_service.list_user_bookings(user_id)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    container: Container = Depends(get_container)
):
    return await container.booking_service.get_booking(booking_id, user_id=user_id)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    container: Container = Depends(get_container)
):
    """
    Cancel a PENDING booking; its tickets go back on sale
    """
    return await container.booking_service.cancel_booking(booking_id, user_id)
