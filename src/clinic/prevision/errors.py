
class PrevisionError(Exception):
    """Base class for pricing and prevision-validation errors."""

    status_code = 400
    retryable = False


class InvalidAmount(PrevisionError):
    """Cash difference missing, non-finite, zero or negative."""

    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Invalid cash difference amount: {amount!r} (must be a finite value > 0)")


class AlreadyReconciled(PrevisionError):
    """Appointment is not pending; another reconciliation already committed."""

    status_code = 409

    def __init__(self, appointment_id: str, status: str):
        self.appointment_id = appointment_id
        self.status = status
        super().__init__(f"Appointment {appointment_id} is not pending validation (status: {status})")


class UnknownTierSelection(PrevisionError):
    status_code = 422

    def __init__(self, value):
        self.value = value
        super().__init__(f"Unknown prevision tier: {value!r} (expected Fonasa, Isapre or Particular)")


class ProfileAppointmentWriteFailure(PrevisionError):
    """The appointment + profile transaction failed and was rolled back."""

    status_code = 503
    retryable = True

    def __init__(self, appointment_id: str, cause: Exception):
        self.appointment_id = appointment_id
        self.cause = cause
        super().__init__(f"Reconciliation of appointment {appointment_id} was rolled back: {cause}")


class TariffNotFound(PrevisionError):
    # configuration error, not a client mistake
    status_code = 500

    def __init__(self, specialty: str):
        self.specialty = specialty
        super().__init__(f"No tariff configured for specialty '{specialty}'")


class AppointmentNotFound(PrevisionError):
    status_code = 404

    def __init__(self, appointment_id: str):
        self.appointment_id = appointment_id
        super().__init__(f"Appointment {appointment_id} not found")


class PatientNotFound(PrevisionError):
    status_code = 404

    def __init__(self, patient_id: str):
        self.patient_id = patient_id
        super().__init__(f"No prevision profile for patient {patient_id}")


class CashLedgerEntryNotFound(PrevisionError):
    status_code = 404

    def __init__(self, appointment_id: str):
        self.appointment_id = appointment_id
        super().__init__(f"No cash difference recorded for appointment {appointment_id}")
