from pydantic import BaseModel, Field
from datetime import date

from .enums import (
    BodyType, Condition, ContractStatus, ContractType, CustomerRole, CustomerType,
    DriveType, FuelType, InvoiceStatus, LeadStatus, LeadType, Transmission,
    VatType, VehicleStatus,
)

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class ImageIn(BaseModel):
    url: str = Field(min_length=1)
    position: int | None = None


class VehicleIn(BaseModel):
    manufacturer: str = Field(min_length=1)
    model: str = Field(min_length=1)
    variant: str | None = None
    body_type: BodyType = BodyType.PASSENGER_CAR
    condition: Condition = Condition.USED
    status: VehicleStatus = VehicleStatus.DRAFT

    vin: str | None = Field(default=None, max_length=17)
    hsn: str | None = None
    tsn: str | None = None
    license_plate: str | None = None
    first_registration: date | None = None
    mileage: int = Field(default=0, ge=0)
    previous_owners: int = Field(default=0, ge=0)
    fuel_type: FuelType | None = None
    transmission: Transmission | None = None
    power_kw: int | None = Field(default=None, ge=0)
    power_ps: int | None = Field(default=None, ge=0)
    displacement: int | None = Field(default=None, ge=0)
    drive_type: DriveType | None = None
    exterior_color: str | None = None
    interior_color: str | None = None
    doors: int | None = Field(default=None, ge=2, le=5)
    seats: int | None = Field(default=None, ge=2, le=9)
    features: list[str] = []

    purchase_price: float | None = Field(default=None, ge=0)
    selling_price: float = Field(ge=0)
    vat_type: VatType = VatType.STANDARD

    title: str | None = None
    description: str | None = None
    export_mobile_de: bool = False
    export_autoscout: bool = False
    images: list[ImageIn] = []


class VehicleUpdate(BaseModel):
    """Partial update: only fields that were sent are applied."""
    manufacturer: str | None = Field(default=None, min_length=1)
    model: str | None = Field(default=None, min_length=1)
    variant: str | None = None
    body_type: BodyType | None = None
    condition: Condition | None = None
    status: VehicleStatus | None = None
    vin: str | None = Field(default=None, max_length=17)
    hsn: str | None = None
    tsn: str | None = None
    license_plate: str | None = None
    first_registration: date | None = None
    mileage: int | None = Field(default=None, ge=0)
    previous_owners: int | None = Field(default=None, ge=0)
    fuel_type: FuelType | None = None
    transmission: Transmission | None = None
    power_kw: int | None = Field(default=None, ge=0)
    power_ps: int | None = Field(default=None, ge=0)
    displacement: int | None = Field(default=None, ge=0)
    drive_type: DriveType | None = None
    exterior_color: str | None = None
    interior_color: str | None = None
    doors: int | None = Field(default=None, ge=2, le=5)
    seats: int | None = Field(default=None, ge=2, le=9)
    features: list[str] | None = None
    purchase_price: float | None = Field(default=None, ge=0)
    selling_price: float | None = Field(default=None, ge=0)
    vat_type: VatType | None = None
    title: str | None = None
    description: str | None = None
    export_mobile_de: bool | None = None
    export_autoscout: bool | None = None
    images: list[ImageIn] | None = None


class CustomerIn(BaseModel):
    type: CustomerType = CustomerType.PRIVATE
    role: CustomerRole = CustomerRole.PROSPECT
    company: str | None = None
    salutation: str | None = None
    first_name: str | None = None
    last_name: str = Field(min_length=1)
    street: str | None = None
    zip_code: str | None = None
    city: str | None = None
    country: str = "Deutschland"
    phone: str | None = None
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN)
    notes: str = ""


class CustomerUpdate(BaseModel):
    type: CustomerType | None = None
    role: CustomerRole | None = None
    company: str | None = None
    salutation: str | None = None
    first_name: str | None = None
    last_name: str | None = Field(default=None, min_length=1)
    street: str | None = None
    zip_code: str | None = None
    city: str | None = None
    country: str | None = None
    phone: str | None = None
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN)
    notes: str | None = None


class ContractIn(BaseModel):
    type: ContractType
    customer_id: int
    vehicle_id: int
    price_net: float = Field(ge=0)
    vat: float = Field(ge=0)
    price_gross: float = Field(ge=0)
    deposit: float = Field(default=0.0, ge=0)
    contract_date: date | None = None
    delivery_date: date | None = None
    payment_terms: str | None = None
    notes: str | None = None
    is_accident_free: bool = True
    reduced_liability: bool = False
    has_warranty: bool = False
    status: ContractStatus = ContractStatus.DRAFT


class ContractUpdate(BaseModel):
    """Terms of a DRAFT or ACTIVE contract; type, parties and status stay fixed."""
    price_net: float | None = Field(default=None, ge=0)
    vat: float | None = Field(default=None, ge=0)
    price_gross: float | None = Field(default=None, ge=0)
    deposit: float | None = Field(default=None, ge=0)
    contract_date: date | None = None
    delivery_date: date | None = None
    payment_terms: str | None = None
    notes: str | None = None
    is_accident_free: bool | None = None
    reduced_liability: bool | None = None
    has_warranty: bool | None = None


class ContractStatusIn(BaseModel):
    status: ContractStatus


class InvoiceStatusIn(BaseModel):
    status: InvoiceStatus
    paid_date: date | None = None


class InvoicePositionIn(BaseModel):
    description: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    unit_price: float = Field(ge=0)
    # Omitted -> quantity * unit_price
    total: float | None = Field(default=None, ge=0)


class InvoiceIn(BaseModel):
    customer_id: int
    contract_id: int | None = None
    # Omitted aggregates are derived from the positions and VAT_RATE.
    net_amount: float | None = Field(default=None, ge=0)
    vat_amount: float | None = Field(default=None, ge=0)
    gross_amount: float | None = Field(default=None, ge=0)
    invoice_date: date | None = None
    due_date: date | None = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    positions: list[InvoicePositionIn] = Field(min_length=1)


class InvoiceUpdate(BaseModel):
    """Edits to a DRAFT invoice. Sending positions replaces all of them."""
    net_amount: float | None = Field(default=None, ge=0)
    vat_amount: float | None = Field(default=None, ge=0)
    gross_amount: float | None = Field(default=None, ge=0)
    invoice_date: date | None = None
    due_date: date | None = None
    positions: list[InvoicePositionIn] | None = Field(default=None, min_length=1)


class LeadIn(BaseModel):
    type: LeadType
    name: str = Field(min_length=1)
    email: str = Field(pattern=EMAIL_PATTERN)
    phone: str | None = None
    message: str = Field(min_length=1)
    vehicle_id: int | None = None


class LeadStatusIn(BaseModel):
    status: LeadStatus
