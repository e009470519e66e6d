import logging
import math
from typing import List, Optional

from . import config
from .errors import TariffNotFound
from .models import FonasaBracket, PricingResult, Tariff, Tier

logger = logging.getLogger(__name__)


# -------- Tier price lookup --------

def tier_price(
    tariff: Tariff,
    tier: Tier,
    fonasa_ratio: Optional[float] = None,
    isapre_ratio: Optional[float] = None,
) -> float:
    """Explicit tier price if configured, else a ratio of the particular price."""
    particular = float(tariff.effective_particular_price)
    if tier == Tier.FONASA:
        if tariff.fonasa_price is not None:
            return float(tariff.fonasa_price)
        ratio = config.FONASA_RATIO if fonasa_ratio is None else fonasa_ratio
        return round(particular * ratio, 2)
    if tier == Tier.ISAPRE:
        if tariff.isapre_price is not None:
            return float(tariff.isapre_price)
        ratio = config.ISAPRE_RATIO if isapre_ratio is None else isapre_ratio
        return round(particular * ratio, 2)
    return particular


def _percent(discount: float, original: float) -> int:
    if original == 0:
        return 0
    # half-up rounding, not banker's
    return int(math.floor(discount / original * 100 + 0.5))


# -------- Calculator --------

def calculate_price(
    tariff: Optional[Tariff],
    tier: Tier,
    fonasa_ratio: Optional[float] = None,
    isapre_ratio: Optional[float] = None,
    specialty: Optional[str] = None,
) -> PricingResult:
    """
    Price an appointment for the given tier.

    original_price is always the particular (full) rate. A tier price above
    the full rate is clamped so a tier never increases what the patient pays.
    """
    if tariff is None:
        raise TariffNotFound(specialty or "<unknown>")
    tier = Tier(tier)

    original = round(float(tariff.effective_particular_price), 2)
    if tier == Tier.PARTICULAR:
        final = original
    else:
        final = round(tier_price(tariff, tier, fonasa_ratio, isapre_ratio), 2)
        if final > original:
            logger.warning(
                "Tier price %.2f for %s exceeds particular price %.2f on '%s'; no discount applied",
                final, tier.value, original, tariff.specialty,
            )
            final = original

    discount = round(max(original - final, 0.0), 2)
    result = PricingResult(
        original_price=original,
        final_price=final,
        discount_amount=discount,
        discount_percent=_percent(discount, original),
        tier_applied=tier,
    )
    logger.debug("Priced '%s' for %s: %s", tariff.specialty, tier.value, result.model_dump())
    return result


# -------- Booking display helpers --------

def required_documents(
    tier: Tier,
    fonasa_bracket: Optional[FonasaBracket] = None,
    isapre_name: Optional[str] = None,
) -> List[str]:
    """Documents the patient must bring so staff can validate the declared tier."""
    tier = Tier(tier)
    if tier == Tier.FONASA:
        bracket = f" (Tramo {FonasaBracket(fonasa_bracket).value})" if fonasa_bracket else ""
        return [f"Carnet FONASA vigente{bracket}", "Cédula de identidad"]
    if tier == Tier.ISAPRE:
        name = f" ({isapre_name})" if isapre_name else ""
        return [
            f"Credencial de Isapre vigente{name}",
            "Cédula de identidad",
            "Bono de atención médica (si su plan lo requiere)",
        ]
    return ["Cédula de identidad"]


def discount_label(
    result: PricingResult,
    fonasa_bracket: Optional[FonasaBracket] = None,
    isapre_name: Optional[str] = None,
) -> Optional[str]:
    if result.discount_amount <= 0:
        return None
    if result.tier_applied == Tier.FONASA:
        bracket = f" {FonasaBracket(fonasa_bracket).value}" if fonasa_bracket else ""
        return f"{result.discount_percent}% Descuento FONASA{bracket}"
    if result.tier_applied == Tier.ISAPRE:
        name = f" {isapre_name}" if isapre_name else ""
        return f"{result.discount_percent}% Descuento ISAPRE{name}"
    return None
