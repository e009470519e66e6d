import logging
import os
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine

from . import config
from .models import Appointment, CashLedgerEntry, PatientInsuranceProfile, Tariff, ValidationStatus
from .tariff import SEED_TARIFF

logger = logging.getLogger(__name__)

PENDING = ValidationStatus.PENDING.value

_APPOINTMENT_COLUMNS = (
    "appointment_id, patient_id, specialty, booked_at, tier_at_booking, "
    "fonasa_bracket_at_booking, isapre_name_at_booking, original_price, final_price, "
    "discount_amount, discount_percent, requires_validation, validated, validation_status, "
    "cash_difference_paid, validation_notes, reconciled_at, reconciled_by"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string so lexical order matches time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def make_engine(url: Optional[str] = None) -> Engine:
    url = url or config.DATABASE_URL
    if url.startswith("sqlite:///"):
        path = url[len("sqlite:///"):]
        if path and path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    engine = create_engine(url, future=True)
    if engine.dialect.name == "sqlite":
        _begin_immediate(engine)
    return engine


def _begin_immediate(engine: Engine) -> None:
    """Open SQLite transactions with BEGIN IMMEDIATE.

    pysqlite otherwise defers BEGIN until the first write, so reads made
    before it are outside the transaction and writers are not serialized.
    """

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class ClinicStore:
    """Data access for tariffs, prevision profiles, appointments and the cash ledger.

    Every method takes an optional ``conn``; when given, the statement joins
    the caller's transaction instead of opening its own.
    """

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or make_engine()

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self.engine.begin() as conn:
            yield conn

    def _conn(self, conn: Optional[Connection]):
        return nullcontext(conn) if conn is not None else self.engine.begin()

    # -------- Schema --------

    def init_db(self, seed: bool = True) -> None:
        """Create tables if they don't exist."""
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS tariffs (
                        specialty TEXT PRIMARY KEY,
                        base_price REAL NOT NULL CHECK(base_price >= 0),
                        fonasa_price REAL CHECK(fonasa_price >= 0),
                        isapre_price REAL CHECK(isapre_price >= 0),
                        particular_price REAL CHECK(particular_price >= 0)
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS prevision_profiles (
                        patient_id TEXT PRIMARY KEY,
                        declared_tier TEXT NOT NULL CHECK(declared_tier IN ('Fonasa','Isapre','Particular')),
                        fonasa_bracket TEXT CHECK(fonasa_bracket IN ('A','B','C','D')),
                        isapre_name TEXT,
                        verified INTEGER NOT NULL DEFAULT 0,
                        verified_at TEXT,
                        verified_by TEXT,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS appointments (
                        appointment_id TEXT PRIMARY KEY,
                        patient_id TEXT NOT NULL,
                        specialty TEXT NOT NULL,
                        booked_at TEXT NOT NULL,
                        tier_at_booking TEXT NOT NULL CHECK(tier_at_booking IN ('Fonasa','Isapre','Particular')),
                        fonasa_bracket_at_booking TEXT,
                        isapre_name_at_booking TEXT,
                        original_price REAL NOT NULL,
                        final_price REAL NOT NULL,
                        discount_amount REAL NOT NULL,
                        discount_percent INTEGER NOT NULL,
                        requires_validation INTEGER NOT NULL,
                        validated INTEGER NOT NULL,
                        validation_status TEXT NOT NULL CHECK(validation_status IN
                            ('not_required','pending','confirmed','cash_difference_paid','tier_corrected')),
                        cash_difference_paid REAL,
                        validation_notes TEXT,
                        reconciled_at TEXT,
                        reconciled_by TEXT
                    )
                    """
                )
            )
            conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS ix_appointments_pending "
                    "ON appointments (validation_status, booked_at, appointment_id)"
                )
            )
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS cash_ledger (
                        entry_id TEXT PRIMARY KEY,
                        appointment_id TEXT NOT NULL UNIQUE,
                        patient_id TEXT NOT NULL,
                        amount REAL NOT NULL CHECK(amount > 0),
                        recorded_at TEXT NOT NULL,
                        note TEXT,
                        FOREIGN KEY(appointment_id) REFERENCES appointments(appointment_id)
                    )
                    """
                )
            )
            if seed:
                for specialty, (base, fonasa, isapre, particular) in SEED_TARIFF.items():
                    conn.execute(
                        text(
                            """
                            INSERT INTO tariffs (specialty, base_price, fonasa_price, isapre_price, particular_price)
                            VALUES (:s, :b, :f, :i, :p)
                            ON CONFLICT(specialty) DO NOTHING
                            """
                        ),
                        {"s": specialty, "b": base, "f": fonasa, "i": isapre, "p": particular},
                    )
        logger.info("Database ready at %s", self.engine.url.render_as_string(hide_password=True))

    # -------- Tariffs --------

    def get_tariff(self, specialty: str, conn: Optional[Connection] = None) -> Optional[Tariff]:
        with self._conn(conn) as c:
            row = c.execute(
                text(
                    "SELECT specialty, base_price, fonasa_price, isapre_price, particular_price "
                    "FROM tariffs WHERE specialty=:s"
                ),
                {"s": specialty},
            ).mappings().first()
        return Tariff(**row) if row else None

    def list_tariffs(self) -> List[Tariff]:
        with self.engine.begin() as conn:
            res = conn.execute(
                text(
                    "SELECT specialty, base_price, fonasa_price, isapre_price, particular_price "
                    "FROM tariffs ORDER BY specialty"
                )
            ).mappings().all()
        return [Tariff(**r) for r in res]

    def upsert_tariff(self, tariff: Tariff) -> Tariff:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO tariffs (specialty, base_price, fonasa_price, isapre_price, particular_price)
                    VALUES (:specialty, :base_price, :fonasa_price, :isapre_price, :particular_price)
                    ON CONFLICT(specialty) DO UPDATE SET
                      base_price=excluded.base_price,
                      fonasa_price=excluded.fonasa_price,
                      isapre_price=excluded.isapre_price,
                      particular_price=excluded.particular_price
                    """
                ),
                tariff.model_dump(),
            )
        return tariff

    # -------- Prevision profiles --------

    def get_profile(self, patient_id: str, conn: Optional[Connection] = None) -> Optional[PatientInsuranceProfile]:
        with self._conn(conn) as c:
            row = c.execute(
                text(
                    "SELECT patient_id, declared_tier, fonasa_bracket, isapre_name, verified, "
                    "verified_at, verified_by, updated_at FROM prevision_profiles WHERE patient_id=:id"
                ),
                {"id": patient_id},
            ).mappings().first()
        return PatientInsuranceProfile(**row) if row else None

    def write_profile(self, profile: PatientInsuranceProfile, conn: Optional[Connection] = None) -> None:
        params = {
            "id": profile.patient_id,
            "tier": profile.declared_tier.value,
            "bracket": profile.fonasa_bracket.value if profile.fonasa_bracket else None,
            "isapre": profile.isapre_name,
            "verified": 1 if profile.verified else 0,
            "verified_at": to_iso(profile.verified_at),
            "verified_by": profile.verified_by,
            "now": to_iso(profile.updated_at or utcnow()),
        }
        with self._conn(conn) as c:
            c.execute(
                text(
                    """
                    INSERT INTO prevision_profiles
                      (patient_id, declared_tier, fonasa_bracket, isapre_name, verified, verified_at, verified_by, updated_at)
                    VALUES (:id, :tier, :bracket, :isapre, :verified, :verified_at, :verified_by, :now)
                    ON CONFLICT(patient_id) DO UPDATE SET
                      declared_tier=excluded.declared_tier,
                      fonasa_bracket=excluded.fonasa_bracket,
                      isapre_name=excluded.isapre_name,
                      verified=excluded.verified,
                      verified_at=excluded.verified_at,
                      verified_by=excluded.verified_by,
                      updated_at=excluded.updated_at
                    """
                ),
                params,
            )

    # -------- Appointments --------

    def insert_appointment(self, appt: Appointment, conn: Optional[Connection] = None) -> None:
        params = appt.model_dump(mode="json")
        params["booked_at"] = to_iso(appt.booked_at)
        params["reconciled_at"] = to_iso(appt.reconciled_at)
        params["requires_validation"] = 1 if appt.requires_validation else 0
        params["validated"] = 1 if appt.validated else 0
        placeholders = ", ".join(f":{c.strip()}" for c in _APPOINTMENT_COLUMNS.split(","))
        with self._conn(conn) as c:
            c.execute(text(f"INSERT INTO appointments ({_APPOINTMENT_COLUMNS}) VALUES ({placeholders})"), params)

    def get_appointment(self, appointment_id: str, conn: Optional[Connection] = None) -> Optional[Appointment]:
        with self._conn(conn) as c:
            row = c.execute(
                text(f"SELECT {_APPOINTMENT_COLUMNS} FROM appointments WHERE appointment_id=:id"),
                {"id": appointment_id},
            ).mappings().first()
        return Appointment(**row) if row else None

    def settle_pending_appointment(
        self,
        appointment_id: str,
        *,
        status: ValidationStatus,
        validated: bool,
        notes: Optional[str],
        reconciled_at: datetime,
        reconciled_by: Optional[str] = None,
        cash_difference_paid: Optional[float] = None,
        conn: Connection,
    ) -> bool:
        """Compare-and-set: only a row still in 'pending' is written. Returns True if it was."""
        res = conn.execute(
            text(
                """
                UPDATE appointments SET
                  validation_status=:status,
                  validated=:validated,
                  validation_notes=:notes,
                  cash_difference_paid=:cash,
                  reconciled_at=:at,
                  reconciled_by=:by
                WHERE appointment_id=:id AND validation_status=:pending
                """
            ),
            {
                "id": appointment_id,
                "status": status.value,
                "validated": 1 if validated else 0,
                "notes": notes,
                "cash": cash_difference_paid,
                "at": to_iso(reconciled_at),
                "by": reconciled_by,
                "pending": PENDING,
            },
        )
        return res.rowcount == 1

    def count_pending(self, conn: Optional[Connection] = None) -> int:
        with self._conn(conn) as conn:
            return int(
                conn.execute(
                    text(
                        "SELECT COUNT(*) FROM appointments "
                        "WHERE requires_validation=1 AND validated=0 AND validation_status=:pending"
                    ),
                    {"pending": PENDING},
                ).scalar_one()
            )

    def list_pending(self, offset: int, limit: int, conn: Optional[Connection] = None) -> List[Appointment]:
        with self._conn(conn) as conn:
            res = conn.execute(
                text(
                    f"""
                    SELECT {_APPOINTMENT_COLUMNS} FROM appointments
                    WHERE requires_validation=1 AND validated=0 AND validation_status=:pending
                    ORDER BY booked_at ASC, appointment_id ASC
                    LIMIT :limit OFFSET :offset
                    """
                ),
                {"pending": PENDING, "limit": limit, "offset": offset},
            ).mappings().all()
        return [Appointment(**r) for r in res]

    def list_for_patient(self, patient_id: str, offset: int, limit: int) -> List[Appointment]:
        with self.engine.begin() as conn:
            res = conn.execute(
                text(
                    f"""
                    SELECT {_APPOINTMENT_COLUMNS} FROM appointments
                    WHERE patient_id=:pid
                    ORDER BY booked_at ASC, appointment_id ASC
                    LIMIT :limit OFFSET :offset
                    """
                ),
                {"pid": patient_id, "limit": limit, "offset": offset},
            ).mappings().all()
        return [Appointment(**r) for r in res]

    # -------- Cash ledger --------

    def insert_ledger_entry(self, entry: CashLedgerEntry, conn: Optional[Connection] = None) -> None:
        params: Dict[str, Any] = entry.model_dump()
        params["recorded_at"] = to_iso(entry.recorded_at)
        with self._conn(conn) as c:
            c.execute(
                text(
                    """
                    INSERT INTO cash_ledger (entry_id, appointment_id, patient_id, amount, recorded_at, note)
                    VALUES (:entry_id, :appointment_id, :patient_id, :amount, :recorded_at, :note)
                    """
                ),
                params,
            )

    def ledger_for_appointment(self, appointment_id: str) -> Optional[CashLedgerEntry]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text(
                    "SELECT entry_id, appointment_id, patient_id, amount, recorded_at, note "
                    "FROM cash_ledger WHERE appointment_id=:id"
                ),
                {"id": appointment_id},
            ).mappings().first()
        return CashLedgerEntry(**row) if row else None
