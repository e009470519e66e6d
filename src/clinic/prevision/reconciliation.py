"""
Reconciliation of pending prevision validations.

A pending appointment is settled by exactly one staff command:

  - ConfirmWithDocuments: documents seen, the patient's profile becomes verified
    and every later booking gets the discount without friction.
  - RecordCashDifference: no documents, the patient pays the difference in
    cash. Recorded as a separate ledger entry; the profile is untouched.
  - CorrectTier: no documents and the declared tier was wrong. The profile is
    overwritten with the actual tier and left unverified.

The appointment write, the profile write and the ledger insert share one
transaction. The appointment row is updated with a compare-and-set on its
'pending' status, so a second command for the same appointment fails with
AlreadyReconciled instead of overwriting the first.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from .db import ClinicStore, utcnow
from .errors import (
    AlreadyReconciled,
    AppointmentNotFound,
    InvalidAmount,
    PrevisionError,
    ProfileAppointmentWriteFailure,
    UnknownTierSelection,
)
from .models import (
    Appointment,
    CashLedgerEntry,
    ConfirmWithDocuments,
    CorrectTier,
    PatientInsuranceProfile,
    ReconciliationCommand,
    ReconciliationOutcome,
    RecordCashDifference,
    ValidationRequest,
    ValidationStatus,
)
from .profile import current_profile, normalized, parse_tier

logger = logging.getLogger(__name__)

CONFIRMED_NOTE = "Previsión validada correctamente con documentos"
CASH_NOTE = "No presentó documentos. Pagó diferencia en efectivo."


def _mismatch_note(declared: str, actual: str) -> str:
    if declared == actual:
        return f"Previsión real: {actual}. Coincide con la declarada; validación anulada."
    return f"Previsión real: {actual}. No coincide con la declarada ({declared})."


def _note(note: Optional[str], default: str) -> str:
    return (note or "").strip() or default


def check_amount(amount: Any) -> float:
    """Cash difference must be a finite number greater than zero."""
    if amount is None or isinstance(amount, bool):
        raise InvalidAmount(amount)
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise InvalidAmount(amount) from None
    if not math.isfinite(value) or value <= 0:
        raise InvalidAmount(amount)
    return round(value, 2)


def suggested_cash_difference(appt: Appointment) -> float:
    """What staff propose when documents are missing: the discount granted at booking."""
    return appt.discount_amount


@dataclass
class _Transition:
    status: ValidationStatus
    validated: bool
    notes: str
    profile: Optional[PatientInsuranceProfile] = None
    cash: Optional[float] = None


# -------- Per-command transitions --------

def _confirm(cmd: ConfirmWithDocuments, appt: Appointment, profile: PatientInsuranceProfile, now: datetime) -> _Transition:
    # the documents prove the tier the appointment was booked under
    if profile.declared_tier != appt.tier_at_booking:
        profile = profile.model_copy(
            update={
                "declared_tier": appt.tier_at_booking,
                "fonasa_bracket": appt.fonasa_bracket_at_booking,
                "isapre_name": appt.isapre_name_at_booking,
            }
        )
    verified = normalized(profile).model_copy(
        update={"verified": True, "verified_at": now, "verified_by": cmd.staff_id, "updated_at": now}
    )
    return _Transition(
        status=ValidationStatus.CONFIRMED,
        validated=True,
        notes=_note(cmd.note, CONFIRMED_NOTE),
        profile=verified,
    )


def _cash(cmd: RecordCashDifference, appt: Appointment, profile: PatientInsuranceProfile, now: datetime) -> _Transition:
    return _Transition(
        status=ValidationStatus.CASH_DIFFERENCE_PAID,
        validated=False,
        notes=_note(cmd.note, CASH_NOTE),
        cash=check_amount(cmd.amount),
    )


def _correct(cmd: CorrectTier, appt: Appointment, profile: PatientInsuranceProfile, now: datetime) -> _Transition:
    actual = parse_tier(cmd.actual_tier)
    declared = appt.tier_at_booking
    corrected = profile.model_copy(
        update={
            "declared_tier": actual,
            # extra details only survive if they still describe the actual tier
            "fonasa_bracket": profile.fonasa_bracket if profile.declared_tier == actual else None,
            "isapre_name": profile.isapre_name if profile.declared_tier == actual else None,
            "verified": False,
            "verified_at": None,
            "verified_by": None,
            "updated_at": now,
        }
    )
    return _Transition(
        status=ValidationStatus.TIER_CORRECTED,
        validated=False,
        notes=_note(cmd.note, _mismatch_note(declared.value, actual.value)),
        profile=normalized(corrected),
    )


def _transition_for(command: ReconciliationCommand, appt: Appointment, profile: PatientInsuranceProfile, now: datetime) -> _Transition:
    if isinstance(command, ConfirmWithDocuments):
        return _confirm(command, appt, profile, now)
    if isinstance(command, RecordCashDifference):
        return _cash(command, appt, profile, now)
    if isinstance(command, CorrectTier):
        return _correct(command, appt, profile, now)
    raise TypeError(f"Unsupported reconciliation command: {type(command).__name__}")


# -------- State machine --------

def reconcile(
    store: ClinicStore,
    appointment_id: str,
    command: ReconciliationCommand,
    now: Optional[datetime] = None,
) -> ReconciliationOutcome:
    """Apply one staff command to a pending appointment, atomically with its profile."""
    now = now or utcnow()
    # reject bad input before touching storage
    if isinstance(command, RecordCashDifference):
        check_amount(command.amount)

    try:
        with store.transaction() as conn:
            appt = store.get_appointment(appointment_id, conn=conn)
            if appt is None:
                raise AppointmentNotFound(appointment_id)
            if appt.validation_status != ValidationStatus.PENDING:
                raise AlreadyReconciled(appointment_id, appt.validation_status.value)

            profile = current_profile(store, appt.patient_id, conn=conn)
            t = _transition_for(command, appt, profile, now)

            settled = store.settle_pending_appointment(
                appointment_id,
                status=t.status,
                validated=t.validated,
                notes=t.notes,
                reconciled_at=now,
                reconciled_by=command.staff_id,
                cash_difference_paid=t.cash,
                conn=conn,
            )
            if not settled:
                # lost the race against a concurrent command
                current = store.get_appointment(appointment_id, conn=conn)
                raise AlreadyReconciled(appointment_id, current.validation_status.value if current else "unknown")

            if t.profile is not None:
                # the profile may have changed since the first read; build from the latest
                fresh = current_profile(store, appt.patient_id, conn=conn)
                t = _transition_for(command, appt, fresh, now)

            ledger = None
            if t.profile is not None:
                store.write_profile(t.profile, conn=conn)
            if t.cash is not None:
                ledger = CashLedgerEntry(
                    entry_id=uuid4().hex,
                    appointment_id=appointment_id,
                    patient_id=appt.patient_id,
                    amount=t.cash,
                    recorded_at=now,
                    note=t.notes,
                )
                store.insert_ledger_entry(ledger, conn=conn)

            updated = store.get_appointment(appointment_id, conn=conn)
            final_profile = current_profile(store, appt.patient_id, conn=conn)
    except AlreadyReconciled as e:
        logger.warning("Rejected reconciliation of %s: already %s", appointment_id, e.status)
        raise
    except PrevisionError:
        raise
    except SQLAlchemyError as e:
        logger.exception("Reconciliation of %s rolled back", appointment_id)
        raise ProfileAppointmentWriteFailure(appointment_id, e) from e

    logger.info(
        "Appointment %s reconciled as %s (patient %s, verified=%s)",
        appointment_id, t.status.value, appt.patient_id, final_profile.verified,
    )
    return ReconciliationOutcome(appointment=updated, profile=final_profile, ledger_entry=ledger)


# -------- Staff commands --------

def confirm_with_documents(
    store: ClinicStore,
    appointment_id: str,
    note: Optional[str] = None,
    staff_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReconciliationOutcome:
    return reconcile(store, appointment_id, ConfirmWithDocuments(note=note, staff_id=staff_id), now=now)


def record_cash_difference(
    store: ClinicStore,
    appointment_id: str,
    amount: Any,
    note: Optional[str] = None,
    staff_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReconciliationOutcome:
    cmd = RecordCashDifference(amount=check_amount(amount), note=note, staff_id=staff_id)
    return reconcile(store, appointment_id, cmd, now=now)


def correct_tier(
    store: ClinicStore,
    appointment_id: str,
    actual_tier: Any,
    note: Optional[str] = None,
    staff_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReconciliationOutcome:
    cmd = CorrectTier(actual_tier=parse_tier(actual_tier), note=note, staff_id=staff_id)
    return reconcile(store, appointment_id, cmd, now=now)


def command_from_request(req: ValidationRequest) -> ReconciliationCommand:
    """Turn the loosely-typed HTTP body into one of the three commands."""
    if req.kind == "confirm_with_documents":
        return ConfirmWithDocuments(note=req.note, staff_id=req.staff_id)
    if req.kind == "cash_difference":
        return RecordCashDifference(amount=check_amount(req.amount), note=req.note, staff_id=req.staff_id)
    if req.kind == "correct_tier":
        if req.actual_tier is None:
            raise UnknownTierSelection(None)
        return CorrectTier(actual_tier=parse_tier(req.actual_tier), note=req.note, staff_id=req.staff_id)
    raise TypeError(f"Unsupported reconciliation kind: {req.kind}")
