import logging
from typing import Any, Optional

from .db import ClinicStore, utcnow
from .errors import UnknownTierSelection
from .models import FonasaBracket, PatientInsuranceProfile, Tier

logger = logging.getLogger(__name__)


def parse_tier(value: Any) -> Tier:
    """Boundary check for tier selections coming from forms or HTTP bodies."""
    if isinstance(value, Tier):
        return value
    if isinstance(value, str):
        for tier in Tier:
            if value.strip().lower() == tier.value.lower():
                return tier
    raise UnknownTierSelection(value)


def normalized(profile: PatientInsuranceProfile) -> PatientInsuranceProfile:
    """Drop the bracket / isapre name when they don't apply to the declared tier."""
    return profile.model_copy(
        update={
            "fonasa_bracket": profile.fonasa_bracket if profile.declared_tier == Tier.FONASA else None,
            "isapre_name": profile.isapre_name if profile.declared_tier == Tier.ISAPRE else None,
        }
    )


def current_profile(store: ClinicStore, patient_id: str, conn=None) -> PatientInsuranceProfile:
    # patients that never declared a prevision are Particular
    return store.get_profile(patient_id, conn=conn) or PatientInsuranceProfile(patient_id=patient_id)


def declare_prevision(
    store: ClinicStore,
    patient_id: str,
    tier: Any,
    fonasa_bracket: Optional[FonasaBracket] = None,
    isapre_name: Optional[str] = None,
) -> PatientInsuranceProfile:
    """
    Patient self-service declaration.

    Never sets verified. Changing the declared tier resets verification, since
    the new tier is an unproven claim; re-declaring the same tier keeps it.
    """
    tier = parse_tier(tier)
    with store.transaction() as conn:
        existing = current_profile(store, patient_id, conn=conn)
        keep_verification = existing.verified and existing.declared_tier == tier
        profile = normalized(
            PatientInsuranceProfile(
                patient_id=patient_id,
                declared_tier=tier,
                fonasa_bracket=FonasaBracket(fonasa_bracket) if fonasa_bracket else None,
                isapre_name=(isapre_name or "").strip() or None,
                verified=keep_verification,
                verified_at=existing.verified_at if keep_verification else None,
                verified_by=existing.verified_by if keep_verification else None,
                updated_at=utcnow(),
            )
        )
        store.write_profile(profile, conn=conn)
    if existing.verified and not keep_verification:
        logger.info(
            "Patient %s changed prevision %s -> %s; verification cleared",
            patient_id, existing.declared_tier.value, tier.value,
        )
    return profile
