from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from typing import List, Optional
import logging

from .booking import book_appointment, quote
from .config import configure_logging, init_env
from .db import ClinicStore
from .errors import AppointmentNotFound, CashLedgerEntryNotFound, PatientNotFound, PrevisionError, TariffNotFound
from .models import (
    Appointment,
    BookingRequest,
    CashLedgerEntry,
    PatientInsuranceProfile,
    PendingPage,
    PrevisionDeclaration,
    QuoteResponse,
    ReconciliationOutcome,
    Tariff,
    ValidationRequest,
)
from .profile import declare_prevision
from .queries import appointments_for_patient, pending_validations
from .reconciliation import command_from_request, reconcile

logger = logging.getLogger(__name__)

app = FastAPI(title="Clinic Prevision Pricing & Validation")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STORE: Optional[ClinicStore] = None


def get_store() -> ClinicStore:
    global _STORE
    if _STORE is None:
        _STORE = ClinicStore()
        _STORE.init_db(seed=True)
    return _STORE


def _http_error(e: PrevisionError) -> HTTPException:
    headers = {"Retry-After": "1"} if e.retryable else None
    if e.status_code >= 500:
        logger.error("%s: %s", type(e).__name__, e)
    return HTTPException(status_code=e.status_code, detail=str(e), headers=headers)


@app.on_event("startup")
def _startup():
    init_env()
    configure_logging()
    get_store()


@app.get("/health")
def health():
    return {"status": "ok"}


# -------- Tariffs --------

@app.get("/tariffs", response_model=List[Tariff])
def list_tariffs(store: ClinicStore = Depends(get_store)):
    return store.list_tariffs()


@app.get("/tariffs/{specialty}", response_model=Tariff)
def get_tariff(specialty: str, store: ClinicStore = Depends(get_store)):
    tariff = store.get_tariff(specialty)
    if tariff is None:
        raise HTTPException(status_code=404, detail=str(TariffNotFound(specialty)))
    return tariff


@app.put("/tariffs/{specialty}", response_model=Tariff)
def put_tariff(specialty: str, tariff: Tariff, store: ClinicStore = Depends(get_store)):
    if tariff.specialty != specialty:
        raise HTTPException(status_code=400, detail="specialty in path and body differ")
    return store.upsert_tariff(tariff)


# -------- Patient prevision --------

@app.get("/patients/{patient_id}/prevision", response_model=PatientInsuranceProfile)
def get_prevision(patient_id: str, store: ClinicStore = Depends(get_store)):
    profile = store.get_profile(patient_id)
    if profile is None:
        raise _http_error(PatientNotFound(patient_id))
    return profile


@app.put("/patients/{patient_id}/prevision", response_model=PatientInsuranceProfile)
def put_prevision(patient_id: str, body: PrevisionDeclaration, store: ClinicStore = Depends(get_store)):
    try:
        return declare_prevision(store, patient_id, body.declared_tier, body.fonasa_bracket, body.isapre_name)
    except PrevisionError as e:
        raise _http_error(e)


@app.get("/patients/{patient_id}/quote", response_model=QuoteResponse)
def get_quote(patient_id: str, specialty: str = Query(...), store: ClinicStore = Depends(get_store)):
    try:
        return quote(store, patient_id, specialty)
    except PrevisionError as e:
        raise _http_error(e)


@app.get("/patients/{patient_id}/appointments", response_model=List[Appointment])
def patient_appointments(
    patient_id: str,
    desde: int = Query(0, ge=0),
    limite: Optional[int] = Query(None, ge=1),
    store: ClinicStore = Depends(get_store),
):
    return appointments_for_patient(store, patient_id, desde, limite)


# -------- Appointments --------

@app.post("/appointments", response_model=Appointment, status_code=201)
def create_appointment(req: BookingRequest, store: ClinicStore = Depends(get_store)):
    try:
        return book_appointment(store, req.patient_id, req.specialty, booked_at=req.booked_at)
    except PrevisionError as e:
        raise _http_error(e)


@app.get("/appointments/pending-validation", response_model=PendingPage)
def list_pending(
    desde: int = Query(0, ge=0),
    limite: Optional[int] = Query(None, ge=1),
    store: ClinicStore = Depends(get_store),
):
    return pending_validations(store, desde, limite)


@app.get("/appointments/{appointment_id}", response_model=Appointment)
def get_appointment(appointment_id: str, store: ClinicStore = Depends(get_store)):
    appt = store.get_appointment(appointment_id)
    if appt is None:
        raise _http_error(AppointmentNotFound(appointment_id))
    return appt


@app.get("/appointments/{appointment_id}/cash-ledger", response_model=CashLedgerEntry)
def get_cash_ledger(appointment_id: str, store: ClinicStore = Depends(get_store)):
    if store.get_appointment(appointment_id) is None:
        raise _http_error(AppointmentNotFound(appointment_id))
    entry = store.ledger_for_appointment(appointment_id)
    if entry is None:
        raise _http_error(CashLedgerEntryNotFound(appointment_id))
    return entry


@app.post("/appointments/{appointment_id}/validation", response_model=ReconciliationOutcome)
def validate_prevision(appointment_id: str, req: ValidationRequest, store: ClinicStore = Depends(get_store)):
    try:
        command = command_from_request(req)
        return reconcile(store, appointment_id, command)
    except PrevisionError as e:
        raise _http_error(e)
