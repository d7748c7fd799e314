import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, List, Any
from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import ServiceType, BillStatus, JobStatus, JobType


# =========================
# Auth
# =========================
class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshRequest(BaseModel):
    refresh_token: str


# =========================
# Readings
# =========================
class ReadingSubmit(BaseModel):
    connection_id: uuid.UUID
    value: Decimal = Field(..., ge=0)
    photo_ref: Optional[str] = None
    reading_date: Optional[datetime] = None


class ReadingRead(BaseModel):
    id: uuid.UUID
    connection_id: uuid.UUID
    value: Decimal
    reading_date: datetime
    submitted_by: str
    photo_ref: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class ReadingImportRow(BaseModel):
    connection_id: uuid.UUID
    value: Decimal = Field(..., ge=0)
    reading_date: datetime
    photo_ref: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        return {
            "connectionId": str(self.connection_id),
            "value": str(self.value),
            "readingDate": self.reading_date.isoformat(),
            "photoRef": self.photo_ref,
        }


class ReadingImport(BaseModel):
    readings: List[ReadingImportRow]


# =========================
# Billing
# =========================
class SlabChargeRead(BaseModel):
    slab_label: str
    units: Decimal
    rate: Decimal
    amount: Decimal


class SurchargeRead(BaseModel):
    name: str
    kind: str
    rate: Decimal
    amount: Decimal


class BillCalculationRead(BaseModel):
    units_consumed: Decimal
    billable_units: Decimal
    fixed_charge: Decimal
    energy_charge: Decimal
    service_surcharge: Decimal
    total_amount: Decimal
    slab_breakdown: List[SlabChargeRead]
    surcharges: List[SurchargeRead]

    @classmethod
    def from_calc(cls, calc) -> "BillCalculationRead":
        return cls(
            units_consumed=calc.units_consumed,
            billable_units=calc.billable_units,
            fixed_charge=calc.fixed_charge,
            energy_charge=calc.energy_charge,
            service_surcharge=calc.service_surcharge,
            total_amount=calc.total_amount,
            slab_breakdown=[
                SlabChargeRead(slab_label=s.slab, units=s.units, rate=s.rate, amount=s.amount)
                for s in calc.slab_breakdown
            ],
            surcharges=[
                SurchargeRead(name=s.name, kind=s.kind, rate=s.rate, amount=s.amount)
                for s in calc.surcharges
            ],
        )


class EstimateRequest(BaseModel):
    service_type: ServiceType
    load_class: str
    units: Decimal = Field(..., ge=0)


class BillRead(BaseModel):
    id: uuid.UUID
    bill_no: str
    user_id: uuid.UUID
    connection_id: uuid.UUID
    meter_reading_id: Optional[uuid.UUID] = None
    bill_date: datetime
    due_date: datetime
    period_from: datetime
    period_to: datetime
    units_consumed: Decimal
    fixed_charge: Decimal
    energy_charge: Decimal
    surcharge_amount: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    status: BillStatus
    paid_at: Optional[datetime] = None
    breakdown: Dict[str, Any] = {}
    model_config = ConfigDict(from_attributes=True)


class PaymentConfirm(BaseModel):
    amount: Decimal = Field(..., gt=0)
    paid_at: Optional[datetime] = None


class SubmissionRead(BaseModel):
    reading: ReadingRead
    bill: Optional[BillRead] = None
    job_id: Optional[uuid.UUID] = None
    notice: Optional[str] = None
    replayed: bool = False


# =========================
# Tariffs
# =========================
class TariffSlabCreate(BaseModel):
    service_type: ServiceType
    load_class: str
    slab_start: Decimal = Field(..., ge=0)
    slab_end: Optional[Decimal] = None
    rate_per_unit: Decimal = Field(..., ge=0)
    fixed_charge: Decimal = Decimal("0")
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_window(self):
        if self.valid_from and self.valid_to and self.valid_to < self.valid_from:
            raise ValueError("valid_to must not be before valid_from")
        return self


class TariffSlabRead(BaseModel):
    id: int
    service_type: ServiceType
    load_class: str
    slab_start: Decimal
    slab_end: Optional[Decimal] = None
    rate_per_unit: Decimal
    fixed_charge: Decimal
    valid_from: datetime
    valid_to: Optional[datetime] = None
    active: bool
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


# =========================
# Jobs
# =========================
class JobRead(BaseModel):
    id: uuid.UUID
    type: str
    payload: Dict[str, Any]
    status: JobStatus
    scheduled_at: datetime
    attempts: int
    max_attempts: int
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class EnqueueRequest(BaseModel):
    meter_reading_id: Optional[uuid.UUID] = None
    connection_id: Optional[uuid.UUID] = None
    scheduled_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _one_target(self):
        if self.meter_reading_id and self.connection_id:
            raise ValueError("Give meter_reading_id or connection_id, not both")
        return self


class JobEnqueue(BaseModel):
    type: JobType
    payload: Dict[str, Any] = {}
    scheduled_at: Optional[datetime] = None
