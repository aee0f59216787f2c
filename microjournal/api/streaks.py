from fastapi import APIRouter, Depends

from microjournal.api.deps import current_user_id, get_journal_service, get_streak_tracker
from microjournal.features.journal.service import JournalService
from microjournal.features.streaks.service import StreakTracker
from microjournal.models.streak import SoloSubject, StreakState

router = APIRouter(prefix="/v1/streaks")


@router.get("/current")
def get_current_streak(
    user_id: int = Depends(current_user_id),
    tracker: StreakTracker = Depends(get_streak_tracker),
    journal: JournalService = Depends(get_journal_service),
):
    """Solo streak for the caller, evaluated against their current journal day."""
    today = journal.current_journal_date(user_id)
    subject = SoloSubject(user_id)
    state = tracker.read_state(subject) or StreakState(subject=subject)
    return state.to_dict(today=today)


@router.get("/pairs")
def list_pair_streaks(
    user_id: int = Depends(current_user_id),
    tracker: StreakTracker = Depends(get_streak_tracker),
    journal: JournalService = Depends(get_journal_service),
):
    today = journal.current_journal_date(user_id)
    return {"streaks": [s.to_dict(viewer_id=user_id, today=today) for s in tracker.pairs_for_user(user_id)]}
