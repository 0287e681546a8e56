"""Closed variant sets for every status and type the back-office stores.

Targets that need a human or partner-facing spelling (export feeds,
documents) keep one translation table per target instead of formatting
strings at each call site.
"""

from enum import Enum


class VehicleStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    RESERVED = "RESERVED"
    SOLD = "SOLD"


class BodyType(str, Enum):
    PASSENGER_CAR = "PASSENGER_CAR"
    SUV = "SUV"
    ESTATE = "ESTATE"
    COUPE = "COUPE"
    CONVERTIBLE = "CONVERTIBLE"
    SEDAN = "SEDAN"
    VAN = "VAN"


class Condition(str, Enum):
    NEW = "NEW"
    USED = "USED"
    YEAR_OLD = "YEAR_OLD"
    DEMONSTRATION = "DEMONSTRATION"


class FuelType(str, Enum):
    PETROL = "PETROL"
    DIESEL = "DIESEL"
    ELECTRIC = "ELECTRIC"
    HYBRID = "HYBRID"
    LPG = "LPG"


class Transmission(str, Enum):
    AUTOMATIC = "AUTOMATIC"
    MANUAL = "MANUAL"


class DriveType(str, Enum):
    FRONT = "FRONT"
    REAR = "REAR"
    ALL_WHEEL = "ALL_WHEEL"


class VatType(str, Enum):
    STANDARD = "STANDARD"  # VAT shown on the invoice
    MARGIN = "MARGIN"      # margin scheme, §25a UStG


class CustomerType(str, Enum):
    PRIVATE = "PRIVATE"
    BUSINESS = "BUSINESS"


class CustomerRole(str, Enum):
    PROSPECT = "PROSPECT"
    BUYER = "BUYER"
    SELLER = "SELLER"


class ContractType(str, Enum):
    PURCHASE = "PURCHASE"
    ACQUISITION = "ACQUISITION"


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_CONTRACT_STATUSES = frozenset({ContractStatus.COMPLETED, ContractStatus.CANCELLED})


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class LeadType(str, Enum):
    VEHICLE_INQUIRY = "VEHICLE_INQUIRY"
    ACQUISITION_INQUIRY = "ACQUISITION_INQUIRY"
    CONTACT = "CONTACT"


class LeadStatus(str, Enum):
    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


# ── Document (German print) labels ──
DOCUMENT_LABELS: dict[Enum, str] = {
    ContractType.PURCHASE: "KAUFVERTRAG",
    ContractType.ACQUISITION: "ANKAUFVERTRAG",
    FuelType.PETROL: "Benzin",
    FuelType.DIESEL: "Diesel",
    FuelType.ELECTRIC: "Elektro",
    FuelType.HYBRID: "Hybrid",
    FuelType.LPG: "LPG",
    Transmission.AUTOMATIC: "Automatik",
    Transmission.MANUAL: "Schaltgetriebe",
    VatType.STANDARD: "MwSt. ausweisbar",
    VatType.MARGIN: "Differenzbesteuerung nach § 25a UStG",
    InvoiceStatus.DRAFT: "Entwurf",
    InvoiceStatus.OPEN: "Offen",
    InvoiceStatus.PAID: "Bezahlt",
    InvoiceStatus.CANCELLED: "Storniert",
}


def document_label(value: Enum | None) -> str:
    if value is None:
        return ""
    return DOCUMENT_LABELS.get(value, value.value)
