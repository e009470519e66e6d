from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Tier(str, Enum):
    FONASA = "Fonasa"
    ISAPRE = "Isapre"
    PARTICULAR = "Particular"


class FonasaBracket(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"


class ValidationStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CASH_DIFFERENCE_PAID = "cash_difference_paid"
    TIER_CORRECTED = "tier_corrected"


class Tariff(BaseModel):
    model_config = ConfigDict(frozen=True)

    specialty: str
    base_price: float = Field(ge=0)
    fonasa_price: Optional[float] = Field(default=None, ge=0)
    isapre_price: Optional[float] = Field(default=None, ge=0)
    particular_price: Optional[float] = Field(default=None, ge=0)

    @property
    def effective_particular_price(self) -> float:
        # particular price is always defined or equals base price
        if self.particular_price is None:
            return self.base_price
        return self.particular_price


class PatientInsuranceProfile(BaseModel):
    patient_id: str
    declared_tier: Tier = Tier.PARTICULAR
    fonasa_bracket: Optional[FonasaBracket] = None
    isapre_name: Optional[str] = None
    verified: bool = False
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class PricingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_price: float
    final_price: float
    discount_amount: float
    discount_percent: int
    tier_applied: Tier


class ValidationRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    requires_validation: bool
    validated: bool
    status: ValidationStatus


class Appointment(BaseModel):
    appointment_id: str
    patient_id: str
    specialty: str
    booked_at: datetime
    tier_at_booking: Tier
    fonasa_bracket_at_booking: Optional[FonasaBracket] = None
    isapre_name_at_booking: Optional[str] = None
    original_price: float
    final_price: float
    discount_amount: float
    discount_percent: int
    requires_validation: bool
    validated: bool
    validation_status: ValidationStatus
    cash_difference_paid: Optional[float] = None
    validation_notes: Optional[str] = None
    reconciled_at: Optional[datetime] = None
    reconciled_by: Optional[str] = None


class CashLedgerEntry(BaseModel):
    entry_id: str
    appointment_id: str
    patient_id: str
    amount: float
    recorded_at: datetime
    note: Optional[str] = None


# -------- Reconciliation commands (closed set, tagged by "kind") --------

class ConfirmWithDocuments(BaseModel):
    kind: Literal["confirm_with_documents"] = "confirm_with_documents"
    note: Optional[str] = None
    staff_id: Optional[str] = None


class RecordCashDifference(BaseModel):
    kind: Literal["cash_difference"] = "cash_difference"
    # amount is checked by the state machine, not here, so that a bad value
    # surfaces as InvalidAmount instead of a generic schema error
    amount: Optional[float] = None
    note: Optional[str] = None
    staff_id: Optional[str] = None


class CorrectTier(BaseModel):
    kind: Literal["correct_tier"] = "correct_tier"
    actual_tier: Tier
    note: Optional[str] = None
    staff_id: Optional[str] = None


ReconciliationCommand = Annotated[
    Union[ConfirmWithDocuments, RecordCashDifference, CorrectTier],
    Field(discriminator="kind"),
]


# -------- API bodies --------

class PrevisionDeclaration(BaseModel):
    declared_tier: str
    fonasa_bracket: Optional[FonasaBracket] = None
    isapre_name: Optional[str] = None


class BookingRequest(BaseModel):
    patient_id: str
    specialty: str
    booked_at: Optional[datetime] = None


class QuoteResponse(BaseModel):
    patient_id: str
    specialty: str
    pricing: PricingResult
    requirement: ValidationRequirement
    previously_verified: bool
    required_documents: List[str]
    discount_label: Optional[str] = None


class ValidationRequest(BaseModel):
    """Raw staff command as received over HTTP.

    ``actual_tier`` stays a plain string so that out-of-enum selections are
    rejected as UnknownTierSelection when parsed at the boundary.
    """
    kind: Literal["confirm_with_documents", "cash_difference", "correct_tier"]
    amount: Optional[float] = None
    actual_tier: Optional[str] = None
    note: Optional[str] = None
    staff_id: Optional[str] = None


class ReconciliationOutcome(BaseModel):
    appointment: Appointment
    profile: PatientInsuranceProfile
    ledger_entry: Optional[CashLedgerEntry] = None


class PendingValidation(Appointment):
    # amount staff propose when the patient brings no documents
    suggested_cash_difference: float


class PendingPage(BaseModel):
    total: int
    offset: int
    limit: int
    items: List[PendingValidation]
