"""Fully resolved, read-only views handed to the export projector and the
document renderer. Building a view copies attributes off ORM rows; neither
consumer ever reaches back into the database."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date

from .enums import (
    BodyType, Condition, ContractStatus, ContractType, CustomerType, DriveType,
    FuelType, InvoiceStatus, Transmission, VatType, VehicleStatus,
)


def _copy(cls, row, **extra):
    names = {f.name for f in fields(cls)} - set(extra)
    return cls(**{n: getattr(row, n) for n in names}, **extra)


@dataclass(frozen=True)
class VehicleView:
    id: int = 0
    vehicle_number: int = 0
    slug: str = ""
    manufacturer: str = ""
    model: str = ""
    variant: str | None = None
    body_type: BodyType = BodyType.PASSENGER_CAR
    condition: Condition = Condition.USED
    status: VehicleStatus = VehicleStatus.ACTIVE
    vin: str | None = None
    hsn: str | None = None
    tsn: str | None = None
    license_plate: str | None = None
    first_registration: date | None = None
    mileage: int = 0
    previous_owners: int = 0
    fuel_type: FuelType | None = None
    transmission: Transmission | None = None
    power_kw: int | None = None
    power_ps: int | None = None
    displacement: int | None = None
    drive_type: DriveType | None = None
    exterior_color: str | None = None
    interior_color: str | None = None
    doors: int | None = None
    seats: int | None = None
    features: tuple[str, ...] = ()
    selling_price: float = 0.0
    vat_type: VatType = VatType.STANDARD
    title: str | None = None
    description: str | None = None
    export_mobile_de: bool = False
    export_autoscout: bool = False
    image_urls: tuple[str, ...] = ()

    @classmethod
    def from_row(cls, row, image_urls=()) -> VehicleView:
        return _copy(cls, row, features=tuple(row.features or ()), image_urls=tuple(image_urls))

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.manufacturer, self.model, self.variant) if p)


@dataclass(frozen=True)
class PartyView:
    customer_number: int = 0
    type: CustomerType = CustomerType.PRIVATE
    company: str | None = None
    salutation: str | None = None
    first_name: str | None = None
    last_name: str = ""
    street: str | None = None
    zip_code: str | None = None
    city: str | None = None
    country: str = "Deutschland"
    phone: str | None = None
    email: str | None = None

    @classmethod
    def from_row(cls, row) -> PartyView:
        return _copy(cls, row)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.salutation, self.first_name, self.last_name) if p)


@dataclass(frozen=True)
class ContractView:
    contract_number: int = 0
    type: ContractType = ContractType.PURCHASE
    status: ContractStatus = ContractStatus.DRAFT
    price_net: float = 0.0
    vat: float = 0.0
    price_gross: float = 0.0
    deposit: float = 0.0
    contract_date: date | None = None
    delivery_date: date | None = None
    payment_terms: str | None = None
    notes: str | None = None
    is_accident_free: bool = True
    reduced_liability: bool = False
    has_warranty: bool = False

    @classmethod
    def from_row(cls, row) -> ContractView:
        return _copy(cls, row)


@dataclass(frozen=True)
class PositionView:
    description: str
    quantity: int
    unit_price: float
    total: float

    @classmethod
    def from_row(cls, row) -> PositionView:
        return _copy(cls, row)


@dataclass(frozen=True)
class InvoiceView:
    invoice_number: str = ""
    status: InvoiceStatus = InvoiceStatus.DRAFT
    net_amount: float = 0.0
    vat_amount: float = 0.0
    gross_amount: float = 0.0
    invoice_date: date | None = None
    due_date: date | None = None
    paid_date: date | None = None

    @classmethod
    def from_row(cls, row) -> InvoiceView:
        return _copy(cls, row)


@dataclass(frozen=True)
class ContractSnapshot:
    contract: ContractView
    customer: PartyView
    vehicle: VehicleView


@dataclass(frozen=True)
class InvoiceSnapshot:
    invoice: InvoiceView
    customer: PartyView
    positions: tuple[PositionView, ...] = field(default_factory=tuple)
    contract: ContractView | None = None
    vehicle: VehicleView | None = None
