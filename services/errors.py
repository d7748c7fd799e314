# services/errors.py
"""
Failure taxonomy for the billing core.

Every domain failure is a BillingError. Subclasses are non-retryable: the
same input fails the same way until data is corrected. Anything raised that
is NOT a BillingError (storage timeouts, a notification transport going
away) is treated as transient by the job runner and retried.
"""
from __future__ import annotations


class BillingError(Exception):
    code = "BILLING_ERROR"
    retryable = False
    http_status = 400


# -------- configuration --------
class NoTariffFound(BillingError):
    code = "NO_TARIFF"
    http_status = 503

    def __init__(self, service_type, load_class, as_of=None):
        self.service_type = service_type
        self.load_class = load_class
        self.as_of = as_of
        super().__init__(f"No active tariff for {getattr(service_type, 'value', service_type)}/{load_class}")


class TariffScheduleError(BillingError):
    code = "TARIFF_SCHEDULE"
    http_status = 503


# -------- business rules --------
class NonMonotonicReading(BillingError):
    code = "NON_MONOTONIC_READING"

    def __init__(self, connection_id, value, previous_value):
        self.connection_id = connection_id
        self.value = value
        self.previous_value = previous_value
        super().__init__(
            f"New reading ({value}) cannot be less than previous reading ({previous_value})"
        )


class ImplausibleReading(BillingError):
    code = "IMPLAUSIBLE_READING"


class InvalidConsumption(BillingError):
    code = "INVALID_CONSUMPTION"

    def __init__(self, units):
        self.units = units
        super().__init__(f"Invalid consumption: {units} units")


class DuplicateBill(BillingError):
    """A bill already covers this reading's period. Means "already done"."""
    code = "DUPLICATE_BILL"
    http_status = 409

    def __init__(self, connection_id, period_to):
        self.connection_id = connection_id
        self.period_to = period_to
        super().__init__(f"Connection {connection_id} already billed up to {period_to}")


class NoPriorReading(BillingError):
    code = "NO_PRIOR_READING"

    def __init__(self, reading_id):
        self.reading_id = reading_id
        super().__init__(f"Meter reading {reading_id} has no earlier reading to bill against")


class InvalidBillState(BillingError):
    code = "INVALID_BILL_STATE"
    http_status = 409


# -------- lookups --------
class NotFound(BillingError):
    code = "NOT_FOUND"
    http_status = 404
    what = "Record"

    def __init__(self, ident):
        self.ident = ident
        super().__init__(f"{self.what} {ident} not found")


class ReadingNotFound(NotFound):
    code = "READING_NOT_FOUND"
    what = "Meter reading"


class ConnectionNotFound(NotFound):
    code = "CONNECTION_NOT_FOUND"
    what = "Active connection"


class BillNotFound(NotFound):
    code = "BILL_NOT_FOUND"
    what = "Bill"


class JobNotFound(NotFound):
    code = "JOB_NOT_FOUND"
    what = "Job"


class InvalidPayment(BillingError):
    code = "INVALID_PAYMENT"


class SubmissionInProgress(BillingError):
    """Same idempotency key is being processed right now."""
    code = "SUBMISSION_IN_PROGRESS"
    http_status = 409
