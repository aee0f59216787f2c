from fastapi import APIRouter, Depends, Response, status

from microjournal.api.deps import current_user_id, get_journal_service
from microjournal.features.journal.service import JournalService
from microjournal.models.activity import ActivityCreate, ActivityRecord

router = APIRouter(prefix="/v1/activities")


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ActivityRecord)
def create_activity(
    payload: ActivityCreate,
    user_id: int = Depends(current_user_id),
    service: JournalService = Depends(get_journal_service),
):
    """Post today's journal entry. 409 when the journal day already has one."""
    return service.create_activity(user_id, payload)


@router.get("/today", response_model=ActivityRecord, responses={204: {"description": "No post yet today"}})
def get_today_activity(
    user_id: int = Depends(current_user_id),
    service: JournalService = Depends(get_journal_service),
):
    record = service.get_today_activity(user_id)
    if record is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return record
