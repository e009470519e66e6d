import logging
from typing import Optional

from .models import PatientInsuranceProfile, Tier, ValidationRequirement, ValidationStatus

logger = logging.getLogger(__name__)

NOT_REQUIRED = ValidationRequirement(
    requires_validation=False,
    validated=True,
    status=ValidationStatus.NOT_REQUIRED,
)
PENDING = ValidationRequirement(
    requires_validation=True,
    validated=False,
    status=ValidationStatus.PENDING,
)


def validation_requirement(profile: Optional[PatientInsuranceProfile]) -> ValidationRequirement:
    """
    Decide whether a new appointment needs staff verification of the tier.

      - Particular (or no profile): nothing to check
      - Fonasa/Isapre already verified: discount applies without friction
      - Fonasa/Isapre never verified: staff must check documents
    The result is frozen into the appointment at booking time.
    """
    if profile is None or profile.declared_tier == Tier.PARTICULAR:
        return NOT_REQUIRED
    if profile.verified:
        logger.debug("Patient %s already verified as %s", profile.patient_id, profile.declared_tier.value)
        return NOT_REQUIRED
    logger.debug("Patient %s declared %s without verification", profile.patient_id, profile.declared_tier.value)
    return PENDING
