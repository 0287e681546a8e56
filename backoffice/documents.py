"""Contract and invoice documents.

Building and rendering are separate steps. build_*_document turns a
snapshot into a Document (labelled lines, tables, paragraphs) with all
formatting applied; render_pdf lays a Document out on A4 pages with
PyMuPDF. Rendering the same snapshot twice yields the same Document.
"""

from __future__ import annotations

import logging
import textwrap
from dataclasses import dataclass, field

import pymupdf

from . import config
from .enums import ContractType, InvoiceStatus, document_label
from .numbering import format_contract_number
from .snapshots import ContractSnapshot, InvoiceSnapshot, PartyView
from .utils import format_date, format_money, thousands

logger = logging.getLogger("documents")

PAGE_W, PAGE_H = 595, 842  # A4 in points
MARGIN = 50
LINE_H = 14
LABEL_W = 150


# ════════════════════════════════════════════════
# DOCUMENT MODEL
# ════════════════════════════════════════════════

@dataclass(frozen=True)
class Dealer:
    name: str
    street: str
    city: str
    phone: str = ""
    email: str = ""
    iban: str = ""
    bic: str = ""
    vat_rate: float = 0.19

    @classmethod
    def from_config(cls) -> Dealer:
        return cls(
            name=config.DEALER_NAME, street=config.DEALER_STREET, city=config.DEALER_CITY,
            phone=config.DEALER_PHONE, email=config.DEALER_EMAIL,
            iban=config.DEALER_IBAN, bic=config.DEALER_BIC, vat_rate=config.VAT_RATE,
        )

    @property
    def letterhead(self) -> str:
        parts = [self.street, self.city]
        if self.phone:
            parts.append(f"Tel: {self.phone}")
        return " | ".join(p for p in parts if p)


@dataclass
class Line:
    label: str
    value: str = ""
    bold: bool = False


@dataclass
class Section:
    heading: str | None = None
    lines: list[Line] = field(default_factory=list)
    paragraphs: list[str] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    rows: list[list[str]] = field(default_factory=list)
    widths: list[int] = field(default_factory=list)


@dataclass
class Document:
    title: str
    number: str
    letterhead: list[str] = field(default_factory=list)
    sections: list[Section] = field(default_factory=list)
    signatures: list[str] = field(default_factory=list)
    footer: list[str] = field(default_factory=list)

    def section(self, heading: str) -> Section | None:
        return next((s for s in self.sections if s.heading == heading), None)

    def value(self, label: str) -> str | None:
        """Value of the first line with this label, None when it was omitted."""
        for s in self.sections:
            for line in s.lines:
                if line.label == label:
                    return line.value
        return None

    def text(self) -> str:
        out = [*self.letterhead, self.title, self.number]
        for s in self.sections:
            if s.heading:
                out.append(s.heading)
            out.extend(f"{ln.label}: {ln.value}" if ln.value else ln.label for ln in s.lines)
            out.extend(s.paragraphs)
            if s.columns:
                out.append(" | ".join(s.columns))
            out.extend(" | ".join(r) for r in s.rows)
        out.extend(self.signatures)
        out.extend(self.footer)
        return "\n".join(out)


# ════════════════════════════════════════════════
# BUILDERS
# ════════════════════════════════════════════════

def _vat_label(rate: float) -> str:
    pct = round(rate * 100, 1)
    shown = f"{pct:.0f}" if pct == int(pct) else f"{pct:.1f}".replace(".", ",")
    return f"MwSt. ({shown}%)"


def _address(party: PartyView) -> list[str]:
    lines = []
    if party.company:
        lines.append(party.company)
    lines.append(party.full_name)
    if party.street:
        lines.append(party.street)
    city = " ".join(p for p in (party.zip_code, party.city) if p)
    if city:
        lines.append(city)
    if party.phone:
        lines.append(f"Tel: {party.phone}")
    return lines


def _dealer_address(dealer: Dealer) -> list[str]:
    lines = [dealer.name, dealer.street, dealer.city]
    if dealer.phone:
        lines.append(f"Tel: {dealer.phone}")
    return [ln for ln in lines if ln]


def _checkbox(checked: bool, text: str) -> str:
    return f"{'[X]' if checked else '[ ]'} {text}"


def build_contract_document(snapshot: ContractSnapshot, dealer: Dealer | None = None) -> Document:
    dealer = dealer or Dealer.from_config()
    c, customer, v = snapshot.contract, snapshot.customer, snapshot.vehicle
    purchase = c.type == ContractType.PURCHASE

    # Parties: on a purchase the dealer sells, on an acquisition the dealer buys.
    dealer_col, customer_col = _dealer_address(dealer), _address(customer)
    depth = max(len(dealer_col), len(customer_col))
    dealer_col += [""] * (depth - len(dealer_col))
    customer_col += [""] * (depth - len(customer_col))
    parties = Section(
        heading="Vertragsparteien",
        columns=["Verkäufer", "Käufer"] if purchase else ["Käufer", "Verkäufer"],
        rows=[list(r) for r in zip(dealer_col, customer_col)],
        widths=[250, 245],
    )

    vehicle = Section(heading="Fahrzeugdaten", lines=[Line("Hersteller / Modell", v.display_name)])
    if v.vin:
        vehicle.lines.append(Line("Fahrzeug-ID-Nr. (FIN)", v.vin))
    if v.hsn and v.tsn:
        vehicle.lines.append(Line("HSN / TSN", f"{v.hsn} / {v.tsn}"))
    elif v.hsn:
        vehicle.lines.append(Line("HSN", v.hsn))
    elif v.tsn:
        vehicle.lines.append(Line("TSN", v.tsn))
    if v.license_plate:
        vehicle.lines.append(Line("Kennzeichen", v.license_plate))
    if v.first_registration:
        vehicle.lines.append(Line("Erstzulassung", format_date(v.first_registration)))
    vehicle.lines.append(Line("Kilometerstand", f"{thousands(v.mileage)} km"))
    if v.fuel_type:
        vehicle.lines.append(Line("Kraftstoff", document_label(v.fuel_type)))
    if v.transmission:
        vehicle.lines.append(Line("Getriebe", document_label(v.transmission)))
    if v.power_kw:
        ps = f" / {v.power_ps} PS" if v.power_ps else ""
        vehicle.lines.append(Line("Leistung", f"{v.power_kw} kW{ps}"))
    if v.exterior_color:
        vehicle.lines.append(Line("Farbe außen", v.exterior_color))
    vehicle.lines.append(Line("Vorbesitzer", str(v.previous_owners)))

    price = Section(heading="Kaufpreis", lines=[
        Line("Netto", format_money(c.price_net)),
        Line(_vat_label(dealer.vat_rate), format_money(c.vat)),
        Line("Brutto", format_money(c.price_gross), bold=True),
    ])
    if c.deposit and c.deposit > 0:
        price.lines.append(Line("Anzahlung", format_money(c.deposit)))
    price.paragraphs.append(document_label(v.vat_type))

    legal = Section(heading="Rechtliche Angaben", paragraphs=[
        _checkbox(c.is_accident_free, "Das Fahrzeug ist unfallfrei"),
        _checkbox(c.reduced_liability, "Haftungsbeschränkung auf Vorsatz und grobe Fahrlässigkeit"),
        _checkbox(c.has_warranty, "Gewährleistung / Garantie vereinbart"),
    ])

    terms = Section(heading="Vereinbarungen", lines=[Line("Vertragsdatum", format_date(c.contract_date))])
    if c.delivery_date:
        terms.lines.append(Line("Übergabedatum", format_date(c.delivery_date)))
    if c.payment_terms:
        terms.lines.append(Line("Zahlungsbedingungen", c.payment_terms))
    if c.notes:
        terms.lines.append(Line("Bemerkungen", c.notes))

    return Document(
        title=document_label(c.type),
        number=f"Nr. {format_contract_number(c.contract_number)}",
        letterhead=[dealer.name, dealer.letterhead],
        sections=[parties, vehicle, price, legal, terms],
        signatures=["Ort, Datum / Unterschrift Verkäufer", "Ort, Datum / Unterschrift Käufer"],
    )


def build_invoice_document(snapshot: InvoiceSnapshot, dealer: Dealer | None = None) -> Document:
    dealer = dealer or Dealer.from_config()
    inv, customer = snapshot.invoice, snapshot.customer

    recipient = Section(heading="Rechnungsempfänger", paragraphs=_address(customer))

    meta = Section(lines=[
        Line("Rechnungsnummer", inv.invoice_number),
        Line("Rechnungsdatum", format_date(inv.invoice_date)),
        Line("Kundennummer", str(customer.customer_number)),
    ])
    if snapshot.contract is not None:
        meta.lines.append(Line("Vertrag", format_contract_number(snapshot.contract.contract_number)))
    if snapshot.vehicle is not None:
        subject = snapshot.vehicle.display_name
        if snapshot.vehicle.vin:
            subject += f", FIN {snapshot.vehicle.vin}"
        meta.lines.append(Line("Betreff", subject))

    positions = Section(
        heading="Positionen",
        columns=["Pos.", "Beschreibung", "Menge", "Einzelpreis", "Gesamt"],
        rows=[
            [str(i), p.description, str(p.quantity), format_money(p.unit_price), format_money(p.total)]
            for i, p in enumerate(snapshot.positions, start=1)
        ],
        widths=[35, 225, 50, 90, 95],
    )

    sums = Section(lines=[
        Line("Nettobetrag", format_money(inv.net_amount)),
        Line(_vat_label(dealer.vat_rate), format_money(inv.vat_amount)),
        Line("Gesamtbetrag", format_money(inv.gross_amount), bold=True),
    ])
    if inv.due_date and inv.status != InvoiceStatus.PAID:
        sums.lines.append(Line("Zahlbar bis", format_date(inv.due_date)))
    if inv.status == InvoiceStatus.PAID and inv.paid_date:
        sums.paragraphs.append(f"Bezahlt am {format_date(inv.paid_date)}. Vielen Dank!")
    elif inv.status == InvoiceStatus.CANCELLED:
        sums.paragraphs.append(document_label(inv.status))

    footer = [" | ".join(p for p in (dealer.name, dealer.email) if p)]
    bank = " | ".join(p for p in (f"IBAN {dealer.iban}" if dealer.iban else "",
                                  f"BIC {dealer.bic}" if dealer.bic else "") if p)
    if bank:
        footer.append(bank)

    return Document(
        title="RECHNUNG",
        number=inv.invoice_number,
        letterhead=[dealer.name, dealer.letterhead],
        sections=[recipient, meta, positions, sums],
        footer=footer,
    )


# ════════════════════════════════════════════════
# PDF
# ════════════════════════════════════════════════

# MuPDF's built-in Helvetica clones, embedded via TextWriter so "€" is encodable.
REGULAR, BOLD = "helv", "hebo"


class _Writer:
    """Top-to-bottom text cursor that starts a new page when one fills up."""

    def __init__(self, pdf: pymupdf.Document):
        self.pdf = pdf
        self.fonts = {False: pymupdf.Font(REGULAR), True: pymupdf.Font(BOLD)}
        self.page = None
        self.tw = None
        self.new_page()

    def new_page(self) -> None:
        self.flush()
        self.page = self.pdf.new_page(width=PAGE_W, height=PAGE_H)
        self.tw = pymupdf.TextWriter(self.page.rect)
        self.y = MARGIN

    def flush(self) -> None:
        if self.tw is not None:
            self.tw.write_text(self.page)
            self.tw = None

    def ensure(self, height: float) -> None:
        if self.y + height > PAGE_H - MARGIN:
            self.new_page()

    def put(self, x: float, y: float, s: str, size: float = 10, bold: bool = False) -> None:
        if s:
            self.tw.append(pymupdf.Point(x, y), s, font=self.fonts[bold], fontsize=size)

    def text(self, x: float, s: str, size: float = 10, bold: bool = False) -> None:
        self.put(x, self.y, s, size, bold)

    def line(self, size: float = 10, *, x: float = MARGIN, s: str = "", bold: bool = False) -> None:
        self.ensure(LINE_H)
        self.text(x, s, size, bold)
        self.y += LINE_H

    def rule(self) -> None:
        self.page.draw_line(pymupdf.Point(MARGIN, self.y), pymupdf.Point(PAGE_W - MARGIN, self.y), width=0.5)
        self.y += LINE_H


def _write_section(w: _Writer, section: Section) -> None:
    w.y += 6
    if section.heading:
        w.line(12, s=section.heading, bold=True)
    for ln in section.lines:
        w.ensure(LINE_H)
        w.text(MARGIN, f"{ln.label}:", bold=True)
        for i, chunk in enumerate(textwrap.wrap(ln.value, 60) or [""]):
            if i:
                w.y += LINE_H
                w.ensure(LINE_H)
            w.text(MARGIN + LABEL_W, chunk, bold=ln.bold)
        w.y += LINE_H
    for para in section.paragraphs:
        for chunk in textwrap.wrap(para, 95) or [""]:
            w.line(s=chunk)
    if section.columns:
        widths = section.widths or [int((PAGE_W - 2 * MARGIN) / len(section.columns))] * len(section.columns)
        w.ensure(LINE_H * 2)
        x = MARGIN
        for col, width in zip(section.columns, widths):
            w.text(x, col, bold=True)
            x += width
        w.y += 4
        w.rule()
        for row in section.rows:
            w.ensure(LINE_H)
            x = MARGIN
            for cell, width in zip(row, widths):
                w.text(x, cell)
                x += width
            w.y += LINE_H


def render_pdf(document: Document) -> bytes:
    with pymupdf.open() as pdf:
        pdf.set_metadata({"title": f"{document.title} {document.number}", "creator": document.letterhead[0] if document.letterhead else ""})
        w = _Writer(pdf)
        if document.letterhead:
            w.line(16, s=document.letterhead[0], bold=True)
            for extra in document.letterhead[1:]:
                w.line(9, s=extra)
        w.y += 10
        w.line(18, s=document.title, bold=True)
        w.line(s=document.number)
        w.rule()
        for section in document.sections:
            _write_section(w, section)
        if document.signatures:
            w.y += LINE_H * 3
            w.ensure(LINE_H * 2)
            col = (PAGE_W - 2 * MARGIN) / len(document.signatures)
            for i, label in enumerate(document.signatures):
                x = MARGIN + i * col
                w.page.draw_line(pymupdf.Point(x, w.y), pymupdf.Point(x + col - 20, w.y), width=0.5)
                w.put(x, w.y + 12, label, size=8)
            w.y += LINE_H * 2
        for i, ln in enumerate(document.footer):
            w.put(MARGIN, PAGE_H - 30 + i * 10, ln, size=8)
        w.flush()
        return pdf.tobytes()


def render(snapshot: ContractSnapshot | InvoiceSnapshot, dealer: Dealer | None = None) -> tuple[bytes, str]:
    """PDF bytes plus download filename for a contract or invoice snapshot."""
    if isinstance(snapshot, ContractSnapshot):
        document = build_contract_document(snapshot, dealer)
        filename = f"vertrag-{format_contract_number(snapshot.contract.contract_number)}.pdf"
    elif isinstance(snapshot, InvoiceSnapshot):
        document = build_invoice_document(snapshot, dealer)
        filename = f"rechnung-{snapshot.invoice.invoice_number}.pdf"
    else:
        raise TypeError(f"Cannot render {type(snapshot).__name__}")
    payload = render_pdf(document)
    logger.info(f"Rendered {filename} ({len(payload)} bytes)")
    return payload, filename
