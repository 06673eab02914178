import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_backend.auth.dependencies import get_current_user
from booking_backend.core.errors import StorageFailure
from booking_backend.database import ensure_database_ready, get_db
from booking_backend.services import slot_generator

router = APIRouter(tags=['slots'])

logger = logging.getLogger(__name__)


class SlotViewResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str | None
    start_at: datetime
    end_at: datetime
    is_booked: bool
    time_string: str


class SlotListResponse(BaseModel):
    slots: list[SlotViewResponse]
    total: int
    available: int
    booked: int


@router.get('/slots', response_model=SlotListResponse, dependencies=[Depends(get_current_user)])
def list_slots(
    from_date: str | None = Query(default=None, alias='from'),
    to_date: str | None = Query(default=None, alias='to'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        listing = slot_generator.list_slots(db, from_date, to_date)
    except SQLAlchemyError as exc:
        logger.exception('Failed to fetch available slots.')
        raise StorageFailure('Failed to fetch available slots.') from exc

    return SlotListResponse(
        slots=[
            SlotViewResponse(
                id=slot.id,
                start_at=slot.start_at,
                end_at=slot.end_at,
                is_booked=slot.is_booked,
                time_string=slot.time_string,
            )
            for slot in listing.slots
        ],
        total=listing.total,
        available=listing.available,
        booked=listing.booked,
    )
