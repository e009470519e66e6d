from typing import List, Optional

from . import config
from .db import ClinicStore
from .models import Appointment, PendingPage, PendingValidation
from .reconciliation import suggested_cash_difference


def _page_bounds(offset: int, limit: Optional[int]):
    offset = max(int(offset or 0), 0)
    limit = config.PAGE_SIZE if limit is None else max(int(limit), 1)
    return offset, limit


def pending_validations(store: ClinicStore, offset: int = 0, limit: Optional[int] = None) -> PendingPage:
    """
    Appointments still waiting for staff to check the patient's documents,
    oldest booking first. Always read from the database so staff never act
    on a stale list.
    """
    offset, limit = _page_bounds(offset, limit)
    # one snapshot, so total and items agree
    with store.transaction() as conn:
        total = store.count_pending(conn=conn)
        appts = store.list_pending(offset, limit, conn=conn)
    items = [
        PendingValidation(**a.model_dump(), suggested_cash_difference=suggested_cash_difference(a))
        for a in appts
    ]
    return PendingPage(total=total, offset=offset, limit=limit, items=items)


def appointments_for_patient(
    store: ClinicStore, patient_id: str, offset: int = 0, limit: Optional[int] = None
) -> List[Appointment]:
    offset, limit = _page_bounds(offset, limit)
    return store.list_for_patient(patient_id, offset, limit)
