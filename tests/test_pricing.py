"""Unit tests for the pricing calculator and the validation requirement gate."""

import pytest

from clinic.prevision.errors import TariffNotFound
from clinic.prevision.gate import validation_requirement
from clinic.prevision.models import (
    FonasaBracket,
    PatientInsuranceProfile,
    Tariff,
    Tier,
    ValidationStatus,
)
from clinic.prevision.pricing import calculate_price, discount_label, required_documents, tier_price
from clinic.prevision.tariff import SEED_TARIFF

FULL = Tariff(
    specialty="Medicina General",
    base_price=30000,
    fonasa_price=21000,
    isapre_price=25500,
    particular_price=30000,
)
NO_TIER_PRICES = Tariff(specialty="Dermatología", base_price=30000)


# ============================================================================
# CALCULATOR
# ============================================================================


class TestCalculatePrice:
    def test_fonasa_explicit_price(self):
        """Explicit Fonasa price: 30000 -> 21000 is a 30% discount."""
        result = calculate_price(FULL, Tier.FONASA)
        assert result.original_price == 30000
        assert result.final_price == 21000
        assert result.discount_amount == 9000
        assert result.discount_percent == 30
        assert result.tier_applied == Tier.FONASA

    def test_isapre_ratio_fallback(self):
        """No isapre price configured: 85% of the particular price."""
        result = calculate_price(NO_TIER_PRICES, Tier.ISAPRE)
        assert result.final_price == 25500
        assert result.discount_amount == 4500
        assert result.discount_percent == 15

    def test_fonasa_ratio_fallback(self):
        result = calculate_price(NO_TIER_PRICES, Tier.FONASA)
        assert result.final_price == 21000
        assert result.discount_percent == 30

    def test_explicit_ratio_overrides_config(self):
        result = calculate_price(NO_TIER_PRICES, Tier.FONASA, fonasa_ratio=0.5)
        assert result.final_price == 15000
        assert result.discount_percent == 50

    def test_particular_never_discounted(self):
        result = calculate_price(FULL, Tier.PARTICULAR)
        assert result.final_price == result.original_price == 30000
        assert result.discount_amount == 0
        assert result.discount_percent == 0

    def test_particular_price_defaults_to_base(self):
        tariff = Tariff(specialty="X", base_price=40000, fonasa_price=28000)
        result = calculate_price(tariff, Tier.FONASA)
        assert result.original_price == 40000
        assert result.discount_percent == 30

    def test_original_is_particular_not_base(self):
        tariff = Tariff(specialty="X", base_price=20000, particular_price=25000, fonasa_price=20000)
        result = calculate_price(tariff, Tier.FONASA)
        assert result.original_price == 25000
        assert result.discount_amount == 5000
        assert result.discount_percent == 20

    def test_tier_price_above_particular_is_clamped(self):
        """A tier must never increase the price."""
        tariff = Tariff(specialty="X", base_price=30000, isapre_price=32000)
        result = calculate_price(tariff, Tier.ISAPRE)
        assert result.final_price == 30000
        assert result.discount_amount == 0
        assert result.discount_percent == 0

    def test_zero_price_has_zero_percent(self):
        tariff = Tariff(specialty="Control", base_price=0)
        result = calculate_price(tariff, Tier.FONASA)
        assert result.original_price == 0
        assert result.final_price == 0
        assert result.discount_percent == 0

    def test_percent_rounds_half_up(self):
        tariff = Tariff(specialty="X", base_price=200, fonasa_price=175)
        # 25 / 200 = 12.5%
        assert calculate_price(tariff, Tier.FONASA).discount_percent == 13

    def test_missing_tariff_is_configuration_error(self):
        with pytest.raises(TariffNotFound) as exc:
            calculate_price(None, Tier.FONASA, specialty="Neurología")
        assert "Neurología" in str(exc.value)

    def test_accepts_tier_string(self):
        assert calculate_price(FULL, "Isapre").tier_applied == Tier.ISAPRE

    def test_deterministic(self):
        assert calculate_price(FULL, Tier.ISAPRE) == calculate_price(FULL, Tier.ISAPRE)

    @pytest.mark.parametrize("specialty", sorted(SEED_TARIFF))
    @pytest.mark.parametrize("tier", list(Tier))
    def test_final_never_exceeds_original(self, specialty, tier):
        base, fonasa, isapre, particular = SEED_TARIFF[specialty]
        tariff = Tariff(
            specialty=specialty,
            base_price=base,
            fonasa_price=fonasa,
            isapre_price=isapre,
            particular_price=particular,
        )
        result = calculate_price(tariff, tier)
        assert result.final_price <= result.original_price
        assert result.discount_amount >= 0
        assert 0 <= result.discount_percent <= 100
        if tier == Tier.PARTICULAR:
            assert result.discount_amount == 0


class TestTierPrice:
    def test_particular_ignores_tier_prices(self):
        assert tier_price(FULL, Tier.PARTICULAR) == 30000

    def test_explicit_price_wins_over_ratio(self):
        assert tier_price(FULL, Tier.ISAPRE, isapre_ratio=0.1) == 25500


# ============================================================================
# DISPLAY HELPERS
# ============================================================================


class TestRequiredDocuments:
    def test_fonasa_with_bracket(self):
        docs = required_documents(Tier.FONASA, FonasaBracket.B)
        assert docs == ["Carnet FONASA vigente (Tramo B)", "Cédula de identidad"]

    def test_isapre_with_name(self):
        docs = required_documents(Tier.ISAPRE, isapre_name="Colmena")
        assert docs[0] == "Credencial de Isapre vigente (Colmena)"
        assert len(docs) == 3

    def test_particular_only_id(self):
        assert required_documents(Tier.PARTICULAR) == ["Cédula de identidad"]


class TestDiscountLabel:
    def test_fonasa_label(self):
        result = calculate_price(FULL, Tier.FONASA)
        assert discount_label(result, FonasaBracket.A) == "30% Descuento FONASA A"

    def test_isapre_label_without_name(self):
        result = calculate_price(FULL, Tier.ISAPRE)
        assert discount_label(result) == "15% Descuento ISAPRE"

    def test_no_label_without_discount(self):
        assert discount_label(calculate_price(FULL, Tier.PARTICULAR)) is None


# ============================================================================
# GATE
# ============================================================================


class TestValidationRequirement:
    def test_particular_needs_nothing(self):
        req = validation_requirement(PatientInsuranceProfile(patient_id="p", declared_tier=Tier.PARTICULAR))
        assert req.requires_validation is False
        assert req.validated is True
        assert req.status == ValidationStatus.NOT_REQUIRED

    def test_missing_profile_is_particular(self):
        assert validation_requirement(None).status == ValidationStatus.NOT_REQUIRED

    @pytest.mark.parametrize("tier", [Tier.FONASA, Tier.ISAPRE])
    def test_unverified_claim_is_pending(self, tier):
        req = validation_requirement(PatientInsuranceProfile(patient_id="p", declared_tier=tier))
        assert req.requires_validation is True
        assert req.validated is False
        assert req.status == ValidationStatus.PENDING

    @pytest.mark.parametrize("tier", list(Tier))
    def test_verified_profile_never_requires_validation(self, tier):
        profile = PatientInsuranceProfile(patient_id="p", declared_tier=tier, verified=True)
        req = validation_requirement(profile)
        assert req.requires_validation is False
        assert req.validated is True
