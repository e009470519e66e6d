import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from .db import ClinicStore, utcnow
from .errors import TariffNotFound
from .gate import validation_requirement
from .models import Appointment, QuoteResponse
from .pricing import calculate_price, discount_label, required_documents
from .profile import current_profile

logger = logging.getLogger(__name__)


def quote(store: ClinicStore, patient_id: str, specialty: str) -> QuoteResponse:
    """Price preview for the booking screen. Writes nothing."""
    tariff = store.get_tariff(specialty)
    if tariff is None:
        raise TariffNotFound(specialty)
    profile = current_profile(store, patient_id)
    pricing = calculate_price(tariff, profile.declared_tier)
    return QuoteResponse(
        patient_id=patient_id,
        specialty=specialty,
        pricing=pricing,
        requirement=validation_requirement(profile),
        previously_verified=profile.verified,
        required_documents=required_documents(profile.declared_tier, profile.fonasa_bracket, profile.isapre_name),
        discount_label=discount_label(pricing, profile.fonasa_bracket, profile.isapre_name),
    )


def book_appointment(
    store: ClinicStore,
    patient_id: str,
    specialty: str,
    booked_at: Optional[datetime] = None,
    appointment_id: Optional[str] = None,
) -> Appointment:
    """
    Create an appointment with its pricing and validation requirement frozen.

    Tariff and profile are read in the same transaction as the insert so the
    snapshot matches what was true at booking time.
    """
    with store.transaction() as conn:
        tariff = store.get_tariff(specialty, conn=conn)
        if tariff is None:
            raise TariffNotFound(specialty)
        profile = current_profile(store, patient_id, conn=conn)
        pricing = calculate_price(tariff, profile.declared_tier)
        requirement = validation_requirement(profile)

        appt = Appointment(
            appointment_id=appointment_id or uuid4().hex,
            patient_id=patient_id,
            specialty=specialty,
            booked_at=booked_at or utcnow(),
            tier_at_booking=pricing.tier_applied,
            fonasa_bracket_at_booking=profile.fonasa_bracket,
            isapre_name_at_booking=profile.isapre_name,
            original_price=pricing.original_price,
            final_price=pricing.final_price,
            discount_amount=pricing.discount_amount,
            discount_percent=pricing.discount_percent,
            requires_validation=requirement.requires_validation,
            validated=requirement.validated,
            validation_status=requirement.status,
        )
        store.insert_appointment(appt, conn=conn)

    logger.info(
        "Booked %s for patient %s (%s, %s): %.2f -> %.2f, validation %s",
        appt.appointment_id, patient_id, specialty, appt.tier_at_booking.value,
        appt.original_price, appt.final_price, appt.validation_status.value,
    )
    return appt
