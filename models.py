from enum import Enum
import uuid

from tortoise import fields, models


class ServiceType(str, Enum):
    ELECTRICITY = "ELECTRICITY"
    WATER = "WATER"
    GAS = "GAS"
    MUNICIPAL = "MUNICIPAL"


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CLOSED = "CLOSED"


class BillStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"  # evaluated by readers, never written by a clock
    CANCELLED = "CANCELLED"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobType(str, Enum):
    GENERATE_BILLS = "GENERATE_BILLS"
    SEND_NOTIFICATIONS = "SEND_NOTIFICATIONS"
    PROCESS_METER_READINGS = "PROCESS_METER_READINGS"


# -------- Users --------
class User(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    username = fields.CharField(max_length=50, unique=True, index=True)
    email = fields.CharField(max_length=100, unique=True, index=True)
    hashed_password = fields.CharField(max_length=128)
    disabled = fields.BooleanField(default=False)
    is_admin = fields.BooleanField(default=False)

    class Meta:
        table = "users"

    def __str__(self) -> str:
        return f"{self.username} ({self.email})"


# -------- Connections & readings --------
class ServiceConnection(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    connection_no = fields.CharField(max_length=64, unique=True, index=True)
    user = fields.ForeignKeyField("models.User", related_name="connections", on_delete=fields.RESTRICT, index=True)
    service_type = fields.CharEnumField(ServiceType, index=True)
    load_class = fields.CharField(max_length=32, index=True)  # RESIDENTIAL / COMMERCIAL / DOMESTIC ...
    status = fields.CharEnumField(ConnectionStatus, default=ConnectionStatus.ACTIVE, index=True)

    # meter value at installation; lets the very first reading be billed
    opening_reading = fields.DecimalField(max_digits=14, decimal_places=3, null=True)
    connected_at = fields.DatetimeField(null=True)

    # denormalized from the latest MeterReading
    last_reading = fields.DecimalField(max_digits=14, decimal_places=3, null=True)
    last_reading_date = fields.DatetimeField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True, index=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "service_connections"

    def __str__(self) -> str:
        return f"{self.connection_no} ({self.service_type})"


class MeterReading(models.Model):
    """Immutable once created; superseded only by a later reading."""
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    connection = fields.ForeignKeyField("models.ServiceConnection", related_name="readings", on_delete=fields.RESTRICT, index=True)
    value = fields.DecimalField(max_digits=14, decimal_places=3)
    reading_date = fields.DatetimeField(index=True)
    submitted_by = fields.CharField(max_length=16, default="CITIZEN")  # CITIZEN | IMPORT | STAFF
    photo_ref = fields.CharField(max_length=512, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "meter_readings"
        indexes = (("connection_id", "reading_date"),)

    def __str__(self) -> str:
        return f"{self.connection_id}@{self.reading_date}: {self.value}"


# -------- Tariffs --------
class TariffSlab(models.Model):
    """
    One priced band of a (service_type, load_class) schedule.
    slab_end = null marks the open top band.
    """
    id = fields.IntField(pk=True)
    service_type = fields.CharEnumField(ServiceType, index=True)
    load_class = fields.CharField(max_length=32, index=True)
    slab_start = fields.DecimalField(max_digits=14, decimal_places=3)
    slab_end = fields.DecimalField(max_digits=14, decimal_places=3, null=True)
    rate_per_unit = fields.DecimalField(max_digits=10, decimal_places=4)
    fixed_charge = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    valid_from = fields.DatetimeField(index=True)
    valid_to = fields.DatetimeField(null=True, index=True)
    active = fields.BooleanField(default=True, index=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "tariff_slabs"

    def __str__(self) -> str:
        return f"{self.service_type}/{self.load_class} {self.slab_start}-{self.slab_end or '∞'} @ {self.rate_per_unit}"


# -------- Bills --------
class Bill(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    user = fields.ForeignKeyField("models.User", related_name="bills", on_delete=fields.RESTRICT, index=True)
    connection = fields.ForeignKeyField("models.ServiceConnection", related_name="bills", on_delete=fields.RESTRICT, index=True)
    meter_reading = fields.ForeignKeyField("models.MeterReading", null=True, related_name="bills", on_delete=fields.SET_NULL)

    bill_no = fields.CharField(max_length=96, unique=True, index=True)
    bill_date = fields.DatetimeField(index=True)
    due_date = fields.DatetimeField(index=True)
    period_from = fields.DatetimeField()
    period_to = fields.DatetimeField(index=True)

    units_consumed = fields.DecimalField(max_digits=14, decimal_places=3)
    fixed_charge = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    energy_charge = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    surcharge_amount = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_amount = fields.DecimalField(max_digits=12, decimal_places=2)
    amount_paid = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    breakdown = fields.JSONField(default=dict)  # BillCalculation.to_dict()

    status = fields.CharEnumField(BillStatus, default=BillStatus.PENDING, index=True)
    paid_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "bills"
        # idempotency guard: one bill per reading period end
        unique_together = ("connection", "period_to")

    def __str__(self) -> str:
        return self.bill_no


class Notification(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    user = fields.ForeignKeyField("models.User", related_name="notifications", on_delete=fields.CASCADE, index=True)
    kind = fields.CharField(max_length=32, index=True)  # BILL_GENERATED | ...
    title = fields.CharField(max_length=200)
    message = fields.TextField()
    data = fields.JSONField(default=dict)
    read = fields.BooleanField(default=False, index=True)
    created_at = fields.DatetimeField(auto_now_add=True, index=True)

    class Meta:
        table = "notifications"


# -------- Background work --------
class Job(models.Model):
    """Durable work item. Kept after completion for audit."""
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    type = fields.CharField(max_length=32, index=True)
    payload = fields.JSONField(default=dict)
    status = fields.CharEnumField(JobStatus, default=JobStatus.PENDING, index=True)
    scheduled_at = fields.DatetimeField(index=True)
    attempts = fields.IntField(default=0)
    max_attempts = fields.IntField(default=3)
    error = fields.TextField(null=True)
    started_at = fields.DatetimeField(null=True)
    claimed_at = fields.DatetimeField(null=True, index=True)
    completed_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True, index=True)

    class Meta:
        table = "jobs"
        indexes = (("status", "scheduled_at"),)

    def __str__(self) -> str:
        return f"{self.type}#{self.id} ({self.status})"


class ExpiringKey(models.Model):
    """Keyed store with TTL (idempotency keys and similar short-lived state)."""
    id = fields.IntField(pk=True)
    key = fields.CharField(max_length=255, unique=True, index=True)
    value = fields.JSONField(default=dict)
    expires_at = fields.DatetimeField(index=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "expiring_keys"
