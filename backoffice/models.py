from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Integer, Float, Date, Boolean, Text, DateTime, JSON, ForeignKey, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from datetime import date, datetime, timezone

from .enums import (
    BodyType, Condition, ContractStatus, ContractType, CustomerRole, CustomerType,
    DriveType, FuelType, InvoiceStatus, LeadStatus, LeadType, Transmission,
    VatType, VehicleStatus,
)


def _utcnow() -> datetime:
    """Naive UTC now: for TIMESTAMP columns (not TIMESTAMPTZ)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(cls) -> SAEnum:
    # Stored as VARCHAR so PostgreSQL needs no CREATE TYPE migrations.
    return SAEnum(cls, native_enum=False, length=24, validate_strings=True)


class Base(DeclarativeBase):
    pass


# ════════════════════════════════════════════════
# COUNTER: durable sequence per namespace (and period)
# ════════════════════════════════════════════════
class Counter(Base):
    """Last number handed out in a namespace. Rows are never deleted, so
    numbers never restart even when the numbered entities are removed."""
    __tablename__ = "counters"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    namespace: Mapped[str] = mapped_column(String(40), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("namespace", "period", name="uq_counter_namespace_period"),
    )


# ════════════════════════════════════════════════
# VEHICLE: inventory
# ════════════════════════════════════════════════
class Vehicle(Base):
    __tablename__ = "vehicles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vehicle_number: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    slug: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)

    manufacturer: Mapped[str] = mapped_column(String(80), nullable=False)
    model: Mapped[str] = mapped_column(String(80), nullable=False)
    variant: Mapped[str | None] = mapped_column(String(120), nullable=True)
    body_type: Mapped[BodyType] = mapped_column(_enum(BodyType), default=BodyType.PASSENGER_CAR)
    condition: Mapped[Condition] = mapped_column(_enum(Condition), default=Condition.USED)
    status: Mapped[VehicleStatus] = mapped_column(_enum(VehicleStatus), default=VehicleStatus.DRAFT)
    # Bumped by every lifecycle write; compare-and-swap token.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    vin: Mapped[str | None] = mapped_column(String(17), nullable=True)
    hsn: Mapped[str | None] = mapped_column(String(8), nullable=True)
    tsn: Mapped[str | None] = mapped_column(String(8), nullable=True)
    license_plate: Mapped[str | None] = mapped_column(String(16), nullable=True)
    first_registration: Mapped[date | None] = mapped_column(Date, nullable=True)
    mileage: Mapped[int] = mapped_column(Integer, default=0)
    previous_owners: Mapped[int] = mapped_column(Integer, default=0)
    fuel_type: Mapped[FuelType | None] = mapped_column(_enum(FuelType), nullable=True)
    transmission: Mapped[Transmission | None] = mapped_column(_enum(Transmission), nullable=True)
    power_kw: Mapped[int | None] = mapped_column(Integer, nullable=True)
    power_ps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    displacement: Mapped[int | None] = mapped_column(Integer, nullable=True)
    drive_type: Mapped[DriveType | None] = mapped_column(_enum(DriveType), nullable=True)
    exterior_color: Mapped[str | None] = mapped_column(String(40), nullable=True)
    interior_color: Mapped[str | None] = mapped_column(String(40), nullable=True)
    doors: Mapped[int | None] = mapped_column(Integer, nullable=True)
    seats: Mapped[int | None] = mapped_column(Integer, nullable=True)
    features: Mapped[list] = mapped_column(JSON, default=list)

    purchase_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    selling_price: Mapped[float] = mapped_column(Float, nullable=False)
    vat_type: Mapped[VatType] = mapped_column(_enum(VatType), default=VatType.STANDARD)

    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    export_mobile_de: Mapped[bool] = mapped_column(Boolean, default=False)
    export_autoscout: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


class VehicleImage(Base):
    __tablename__ = "vehicle_images"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)


# ════════════════════════════════════════════════
# CUSTOMER
# ════════════════════════════════════════════════
class Customer(Base):
    __tablename__ = "customers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_number: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    type: Mapped[CustomerType] = mapped_column(_enum(CustomerType), default=CustomerType.PRIVATE)
    # Advisory only: kept current by the lifecycle core.
    role: Mapped[CustomerRole] = mapped_column(_enum(CustomerRole), default=CustomerRole.PROSPECT)
    # Bumped whenever a contract or invoice starts referencing the customer.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    company: Mapped[str | None] = mapped_column(String(200), nullable=True)
    salutation: Mapped[str | None] = mapped_column(String(20), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    last_name: Mapped[str] = mapped_column(String(80), nullable=False)
    street: Mapped[str | None] = mapped_column(String(200), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    city: Mapped[str | None] = mapped_column(String(80), nullable=True)
    country: Mapped[str] = mapped_column(String(60), default="Deutschland")
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    email: Mapped[str | None] = mapped_column(String(254), nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


# ════════════════════════════════════════════════
# CONTRACT: sole driver of Vehicle.status
# ════════════════════════════════════════════════
class Contract(Base):
    __tablename__ = "contracts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_number: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    type: Mapped[ContractType] = mapped_column(_enum(ContractType), nullable=False)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False, index=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id"), nullable=False, index=True)
    price_net: Mapped[float] = mapped_column(Float, default=0.0)
    vat: Mapped[float] = mapped_column(Float, default=0.0)
    price_gross: Mapped[float] = mapped_column(Float, default=0.0)
    deposit: Mapped[float] = mapped_column(Float, default=0.0)
    contract_date: Mapped[date] = mapped_column(Date, nullable=False)
    delivery_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_accident_free: Mapped[bool] = mapped_column(Boolean, default=True)
    reduced_liability: Mapped[bool] = mapped_column(Boolean, default=False)
    has_warranty: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[ContractStatus] = mapped_column(_enum(ContractStatus), default=ContractStatus.DRAFT)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


# ════════════════════════════════════════════════
# INVOICE + POSITIONS
# ════════════════════════════════════════════════
class Invoice(Base):
    __tablename__ = "invoices"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    contract_id: Mapped[int | None] = mapped_column(ForeignKey("contracts.id"), nullable=True, index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False, index=True)
    net_amount: Mapped[float] = mapped_column(Float, default=0.0)
    vat_amount: Mapped[float] = mapped_column(Float, default=0.0)
    gross_amount: Mapped[float] = mapped_column(Float, default=0.0)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[InvoiceStatus] = mapped_column(_enum(InvoiceStatus), default=InvoiceStatus.DRAFT)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class InvoicePosition(Base):
    __tablename__ = "invoice_positions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    description: Mapped[str] = mapped_column(String(300), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[float] = mapped_column(Float, default=0.0)
    total: Mapped[float] = mapped_column(Float, default=0.0)


# ════════════════════════════════════════════════
# LEAD: public inquiry, convertible into a customer
# ════════════════════════════════════════════════
class Lead(Base):
    __tablename__ = "leads"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[LeadType] = mapped_column(_enum(LeadType), nullable=False)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    email: Mapped[str] = mapped_column(String(254), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    message: Mapped[str] = mapped_column(Text, default="")
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id"), nullable=True)
    status: Mapped[LeadStatus] = mapped_column(_enum(LeadStatus), default=LeadStatus.NEW)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
