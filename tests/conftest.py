"""Shared fixtures: every test gets its own SQLite database."""

from datetime import datetime, timedelta, timezone

import pytest

from clinic.prevision.db import ClinicStore, make_engine
from clinic.prevision.models import Tariff
from clinic.prevision.profile import declare_prevision

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path) -> ClinicStore:
    s = ClinicStore(make_engine(f"sqlite:///{tmp_path / 'prevision.sqlite3'}"))
    s.init_db(seed=False)
    s.upsert_tariff(
        Tariff(
            specialty="Medicina General",
            base_price=30000,
            fonasa_price=21000,
            isapre_price=25500,
            particular_price=30000,
        )
    )
    s.upsert_tariff(Tariff(specialty="Dermatología", base_price=30000))
    return s


@pytest.fixture
def fonasa_patient(store) -> str:
    declare_prevision(store, "11.111.111-1", "Fonasa", fonasa_bracket="B")
    return "11.111.111-1"


@pytest.fixture
def isapre_patient(store) -> str:
    declare_prevision(store, "22.222.222-2", "Isapre", isapre_name="Colmena")
    return "22.222.222-2"


def at(minutes: int) -> datetime:
    """Booking timestamp `minutes` after a fixed origin."""
    return T0 + timedelta(minutes=minutes)
