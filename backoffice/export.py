"""Marketplace CSV feeds (mobile.de, AutoScout24).

A feed is an ExportSchema: an ordered list of (header, extractor) columns
plus one translation table per enum field. Projection is a pure function of
the vehicle views it is given; nothing here reads the database.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Callable

from .config import DEALER_SLUG
from .enums import BodyType, Condition, DriveType, FuelType, Transmission, VatType
from .errors import ValidationError
from .snapshots import VehicleView

logger = logging.getLogger("export")

IMAGE_SLOTS = 10
BOM = "\ufeff"
_LINE_BREAKS = re.compile(r"\r\n|\r|\n")

# Vehicle attribute -> enum, for every field that goes through a translation table.
TRANSLATED_FIELDS: dict[str, type[Enum]] = {
    "body_type": BodyType,
    "condition": Condition,
    "fuel_type": FuelType,
    "transmission": Transmission,
    "drive_type": DriveType,
    "vat_type": VatType,
}


# ════════════════════════════════════════════════
# TRANSLATION TABLES
# ════════════════════════════════════════════════

MOBILE_DE_TRANSLATIONS: dict[str, dict[Enum, str]] = {
    "body_type": {
        BodyType.PASSENGER_CAR: "Limousine",
        BodyType.SUV: "SUV/Geländewagen",
        BodyType.ESTATE: "Kombi",
        BodyType.COUPE: "Coupé",
        BodyType.CONVERTIBLE: "Cabrio",
        BodyType.SEDAN: "Limousine",
        BodyType.VAN: "Van/Kleinbus",
    },
    "condition": {
        Condition.NEW: "Neufahrzeug",
        Condition.USED: "Gebraucht",
        Condition.YEAR_OLD: "Jahreswagen",
        Condition.DEMONSTRATION: "Vorführfahrzeug",
    },
    "fuel_type": {
        FuelType.PETROL: "Benzin",
        FuelType.DIESEL: "Diesel",
        FuelType.ELECTRIC: "Elektro",
        FuelType.HYBRID: "Hybrid",
        FuelType.LPG: "LPG",
    },
    "transmission": {
        Transmission.AUTOMATIC: "Automatik",
        Transmission.MANUAL: "Schaltgetriebe",
    },
    "drive_type": {
        DriveType.FRONT: "Vorderrad",
        DriveType.REAR: "Hinterrad",
        DriveType.ALL_WHEEL: "Allrad",
    },
    "vat_type": {
        VatType.STANDARD: "MwSt. ausweisbar",
        VatType.MARGIN: "Differenzbesteuert",
    },
}

AUTOSCOUT_TRANSLATIONS: dict[str, dict[Enum, str]] = {
    "body_type": {
        BodyType.PASSENGER_CAR: "Sedan",
        BodyType.SUV: "SUV",
        BodyType.ESTATE: "Station wagon",
        BodyType.COUPE: "Coupe",
        BodyType.CONVERTIBLE: "Convertible",
        BodyType.SEDAN: "Sedan",
        BodyType.VAN: "Van",
    },
    "condition": {
        Condition.NEW: "New",
        Condition.USED: "Used",
        Condition.YEAR_OLD: "Used",
        Condition.DEMONSTRATION: "Demonstration",
    },
    "fuel_type": {
        FuelType.PETROL: "Petrol",
        FuelType.DIESEL: "Diesel",
        FuelType.ELECTRIC: "Electric",
        FuelType.HYBRID: "Hybrid",
        FuelType.LPG: "LPG",
    },
    "transmission": {
        Transmission.AUTOMATIC: "Automatic",
        Transmission.MANUAL: "Manual",
    },
    "drive_type": {
        DriveType.FRONT: "Front",
        DriveType.REAR: "Rear",
        DriveType.ALL_WHEEL: "4WD",
    },
    "vat_type": {
        VatType.STANDARD: "1",
        VatType.MARGIN: "0",
    },
}


# ════════════════════════════════════════════════
# SCHEMAS
# ════════════════════════════════════════════════

Extractor = Callable[[VehicleView, "ExportSchema"], object]


@dataclass(frozen=True)
class ExportSchema:
    schema_id: str
    label: str
    columns: tuple[tuple[str, Extractor], ...]
    translations: dict[str, dict[Enum, str]] = field(default_factory=dict)
    export_flag: str = ""
    separator: str = ";"
    quotechar: str = '"'

    @property
    def headers(self) -> list[str]:
        return [h for h, _ in self.columns]

    def translate(self, field_name: str, value: Enum | None) -> str:
        """Partner spelling of an enum value; unmapped values pass through raw."""
        if value is None:
            return ""
        return self.translations.get(field_name, {}).get(value, value.value)


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else f"{value:.2f}"
    # Feeds are one record per line; embedded breaks of any style become spaces.
    return _LINE_BREAKS.sub(" ", str(value))


def _attr(name: str) -> Extractor:
    return lambda v, s: getattr(v, name)


def _translated(name: str) -> Extractor:
    return lambda v, s: s.translate(name, getattr(v, name))


def _title(v: VehicleView, s: ExportSchema) -> str:
    return v.title or f"{v.manufacturer} {v.model}"


def _description(v: VehicleView, s: ExportSchema) -> str:
    return v.description or ""


def _features(v: VehicleView, s: ExportSchema) -> str:
    return ", ".join(v.features)


def _image(slot: int) -> Extractor:
    return lambda v, s: v.image_urls[slot] if slot < len(v.image_urls) else ""


def _registration_mm_yyyy(v: VehicleView, s: ExportSchema) -> str:
    return v.first_registration.strftime("%m.%Y") if v.first_registration else ""


def _registration_year(v: VehicleView, s: ExportSchema) -> str:
    return str(v.first_registration.year) if v.first_registration else ""


def _registration_month(v: VehicleView, s: ExportSchema) -> str:
    return f"{v.first_registration.month:02d}" if v.first_registration else ""


def _images(prefix: str) -> list[tuple[str, Extractor]]:
    return [(f"{prefix}{i + 1}", _image(i)) for i in range(IMAGE_SLOTS)]


MOBILE_DE = ExportSchema(
    schema_id="mobile-de",
    label="mobile.de",
    export_flag="export_mobile_de",
    translations=MOBILE_DE_TRANSLATIONS,
    columns=tuple([
        ("Fahrzeugnummer", _attr("vehicle_number")),
        ("Hersteller", _attr("manufacturer")),
        ("Modell", _attr("model")),
        ("Variante", _attr("variant")),
        ("Fahrzeugtyp", _translated("body_type")),
        ("Zustand", _translated("condition")),
        ("Preis", _attr("selling_price")),
        ("MwSt", _translated("vat_type")),
        ("Erstzulassung", _registration_mm_yyyy),
        ("Kilometerstand", _attr("mileage")),
        ("Kraftstoff", _translated("fuel_type")),
        ("Getriebe", _translated("transmission")),
        ("Leistung_KW", _attr("power_kw")),
        ("Leistung_PS", _attr("power_ps")),
        ("Hubraum", _attr("displacement")),
        ("Antrieb", _translated("drive_type")),
        ("Außenfarbe", _attr("exterior_color")),
        ("Innenfarbe", _attr("interior_color")),
        ("Türen", _attr("doors")),
        ("Sitze", _attr("seats")),
        ("Vorbesitzer", _attr("previous_owners")),
        ("FIN", _attr("vin")),
        ("HSN", _attr("hsn")),
        ("TSN", _attr("tsn")),
        ("Kurztitel", _title),
        ("Beschreibung", _description),
        ("Ausstattung", _features),
        *_images("Bild"),
    ]),
)

AUTOSCOUT24 = ExportSchema(
    schema_id="autoscout24",
    label="AutoScout24",
    export_flag="export_autoscout",
    translations=AUTOSCOUT_TRANSLATIONS,
    columns=tuple([
        ("dealer_vehicle_id", _attr("vehicle_number")),
        ("make", _attr("manufacturer")),
        ("model", _attr("model")),
        ("model_variant", _attr("variant")),
        ("category", _translated("body_type")),
        ("condition", _translated("condition")),
        ("price", _attr("selling_price")),
        ("vat", _translated("vat_type")),
        ("first_registration_year", _registration_year),
        ("first_registration_month", _registration_month),
        ("mileage", _attr("mileage")),
        ("fuel_type", _translated("fuel_type")),
        ("gearbox", _translated("transmission")),
        ("power_kw", _attr("power_kw")),
        ("power_hp", _attr("power_ps")),
        ("cubic_capacity", _attr("displacement")),
        ("drive_type", _translated("drive_type")),
        ("exterior_color", _attr("exterior_color")),
        ("interior_color", _attr("interior_color")),
        ("doors", _attr("doors")),
        ("seats", _attr("seats")),
        ("previous_owners", _attr("previous_owners")),
        ("vin", _attr("vin")),
        ("title", _title),
        ("description", _description),
        ("equipment", _features),
        *_images("image_url_"),
    ]),
)

SCHEMAS: dict[str, ExportSchema] = {s.schema_id: s for s in (MOBILE_DE, AUTOSCOUT24)}


def get_schema(schema_id: str) -> ExportSchema:
    try:
        return SCHEMAS[schema_id]
    except KeyError:
        raise ValidationError(
            f"Unknown export format '{schema_id}'",
            {"format": f"one of {', '.join(sorted(SCHEMAS))}"},
        ) from None


# ════════════════════════════════════════════════
# PROJECTION
# ════════════════════════════════════════════════

def project(vehicles: list[VehicleView], schema_id: str) -> list[list[str]]:
    """One row per vehicle, in input order, header excluded."""
    schema = get_schema(schema_id)
    return [[_cell(extract(v, schema)) for _, extract in schema.columns] for v in vehicles]


def to_csv(rows: list[list[str]], schema: ExportSchema) -> bytes:
    out = io.StringIO()
    w = csv.writer(
        out, delimiter=schema.separator, quotechar=schema.quotechar,
        quoting=csv.QUOTE_MINIMAL, lineterminator="\n",
    )
    w.writerow(schema.headers)
    w.writerows(rows)
    return (BOM + out.getvalue()).encode("utf-8")


def export_filename(schema_id: str, day: date) -> str:
    return f"{DEALER_SLUG}-{schema_id}-{day.isoformat()}.csv"


def export_csv(vehicles: list[VehicleView], schema_id: str, day: date) -> tuple[bytes, str]:
    schema = get_schema(schema_id)
    payload = to_csv(project(vehicles, schema_id), schema)
    filename = export_filename(schema_id, day)
    logger.info(f"Exported {len(vehicles)} vehicle(s) as {schema.label} ({filename})")
    return payload, filename


def reverse_translate(schema_id: str, field_name: str, external: str) -> Enum | None:
    """Enum member behind a partner spelling, or None when the spelling is
    unknown or shared by several members (e.g. AutoScout24 "Used")."""
    schema = get_schema(schema_id)
    if field_name not in TRANSLATED_FIELDS:
        raise ValidationError(f"'{field_name}' is not a translated field", {"field": "unknown"})
    table = schema.translations.get(field_name, {})
    matches = [member for member, text in table.items() if text == external]
    return matches[0] if len(matches) == 1 else None
