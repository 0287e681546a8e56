"""Write and read operations over the entity store.

Every write runs inside ``transaction(db)``: the lifecycle plan, the
number allocation and the entity insert either all commit or all roll back.
Vehicle and contract writes are compare-and-swap updates, so a concurrent
writer that got there first turns into a Conflict instead of a silent
overwrite. Deletes claim the row's version after their reference check,
and every new reference bumps that version.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .config import VAT_RATE
from .database import transaction
from .enums import (
    TERMINAL_CONTRACT_STATUSES, ContractStatus, ContractType, CustomerRole, CustomerType,
    InvoiceStatus, LeadStatus, VehicleStatus,
)
from .errors import Conflict, NotFound, ValidationError
from .export import export_csv, get_schema
from .lifecycle import (
    ContractStatusChange, CustomerCreation, CustomerRoleChange, CustomerTouch, LeadCompletion,
    LifecyclePlan, VehicleStatusChange, VehicleTouch,
    plan_contract_creation, plan_contract_transition, plan_lead_conversion,
)
from .models import (
    Contract, Customer, Invoice, InvoicePosition, Lead, Vehicle, VehicleImage, _utcnow,
)
from .numbering import format_contract_number, format_invoice_number, next_value
from .schemas import (
    ContractIn, ContractUpdate, CustomerIn, CustomerUpdate, InvoiceIn, InvoicePositionIn,
    InvoiceUpdate, LeadIn, VehicleIn, VehicleUpdate,
)
from .snapshots import (
    ContractSnapshot, ContractView, InvoiceSnapshot, InvoiceView, PartyView,
    PositionView, VehicleView,
)
from .utils import amounts_match, round2, slugify, today

logger = logging.getLogger("services")

# Statuses staff may set by hand; RESERVED and SOLD belong to contracts.
MANUAL_VEHICLE_STATUSES = frozenset({VehicleStatus.DRAFT, VehicleStatus.ACTIVE})

INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.OPEN, InvoiceStatus.CANCELLED}),
    InvoiceStatus.OPEN: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}
INITIAL_INVOICE_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.OPEN})

EDITABLE_CONTRACT_STATUSES = frozenset({ContractStatus.DRAFT, ContractStatus.ACTIVE})
# ContractUpdate fields that may be cleared with an explicit null.
CLEARABLE_CONTRACT_FIELDS = frozenset({"delivery_date", "payment_terms", "notes"})
INVOICE_AMOUNT_FIELDS = frozenset({"net_amount", "vat_amount", "gross_amount", "positions"})
CUSTOMER_SEARCH_COLUMNS = (
    Customer.first_name, Customer.last_name, Customer.company, Customer.email, Customer.phone,
)

_LABELS = {
    Vehicle: "Vehicle", Customer: "Customer", Contract: "Contract",
    Invoice: "Invoice", Lead: "Lead",
}


# ── Helpers ──────────────────────────────────────────────────────────────────

async def _require(db: AsyncSession, model, entity_id: int):
    row = await db.get(model, entity_id, populate_existing=True)
    if row is None:
        raise NotFound(f"{_LABELS[model]} {entity_id} not found")
    return row


async def _open_purchase_contracts(db: AsyncSession, vehicle_id: int) -> int:
    return (await db.execute(
        select(func.count(Contract.id)).where(
            Contract.vehicle_id == vehicle_id,
            Contract.type == ContractType.PURCHASE,
            Contract.status.notin_(list(TERMINAL_CONTRACT_STATUSES)),
        )
    )).scalar_one()


async def _reference_count(db: AsyncSession, column, entity_id: int) -> int:
    """Rows whose foreign key `column` points at `entity_id`."""
    return (await db.execute(
        select(func.count()).select_from(column.class_).where(column == entity_id)
    )).scalar_one()


async def _replace_images(db: AsyncSession, vehicle_id: int, images) -> None:
    await db.execute(delete(VehicleImage).where(VehicleImage.vehicle_id == vehicle_id))
    for index, img in enumerate(images):
        pos = img.position if img.position is not None else index
        db.add(VehicleImage(vehicle_id=vehicle_id, url=img.url, position=pos))


async def _image_urls(db: AsyncSession, vehicle_ids: list[int]) -> dict[int, list[str]]:
    urls: dict[int, list[str]] = {vid: [] for vid in vehicle_ids}
    if not vehicle_ids:
        return urls
    rows = (await db.execute(
        select(VehicleImage)
        .where(VehicleImage.vehicle_id.in_(vehicle_ids))
        .order_by(VehicleImage.vehicle_id, VehicleImage.position, VehicleImage.id)
    )).scalars().all()
    for img in rows:
        urls[img.vehicle_id].append(img.url)
    return urls


# ── Plan application ─────────────────────────────────────────────────────────

async def apply_plan(db: AsyncSession, plan: LifecyclePlan) -> dict:
    """Execute every mutation of a plan inside the caller's transaction.

    Returns {"customer": Customer} when the plan created one. Raises Conflict
    as soon as a compare-and-swap misses; the caller's transaction then
    rolls back everything applied so far.
    """
    created: dict = {}
    for m in plan.mutations:
        if isinstance(m, VehicleStatusChange):
            res = await db.execute(
                update(Vehicle)
                .where(Vehicle.id == m.vehicle_id,
                       Vehicle.status == m.expected_status,
                       Vehicle.version == m.expected_version)
                .values(status=m.new_status, version=Vehicle.version + 1, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise Conflict(f"Vehicle {m.vehicle_id} changed concurrently; expected {m.expected_status.value}")
        elif isinstance(m, VehicleTouch):
            res = await db.execute(
                update(Vehicle)
                .where(Vehicle.id == m.vehicle_id, Vehicle.version == m.expected_version)
                .values(version=Vehicle.version + 1)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise Conflict(f"Vehicle {m.vehicle_id} changed concurrently")
        elif isinstance(m, CustomerTouch):
            res = await db.execute(
                update(Customer)
                .where(Customer.id == m.customer_id, Customer.version == m.expected_version)
                .values(version=Customer.version + 1)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise Conflict(f"Customer {m.customer_id} changed concurrently")
        elif isinstance(m, ContractStatusChange):
            res = await db.execute(
                update(Contract)
                .where(Contract.id == m.contract_id, Contract.status == m.from_status)
                .values(status=m.to_status)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise Conflict(f"Contract {m.contract_id} is no longer {m.from_status.value}")
        elif isinstance(m, CustomerRoleChange):
            # Advisory: a customer who already moved on keeps their role.
            await db.execute(
                update(Customer)
                .where(Customer.id == m.customer_id, Customer.role == m.from_role)
                .values(role=m.to_role)
                .execution_options(synchronize_session=False)
            )
        elif isinstance(m, CustomerCreation):
            number = await next_value(db, "customer")
            customer = Customer(**m.values, customer_number=number)
            db.add(customer)
            await db.flush()
            created["customer"] = customer
        elif isinstance(m, LeadCompletion):
            values = {"status": LeadStatus.COMPLETED}
            if "customer" in created:
                values["customer_id"] = created["customer"].id
            res = await db.execute(
                update(Lead)
                .where(Lead.id == m.lead_id, Lead.status == m.from_status, Lead.customer_id.is_(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise Conflict(f"Lead {m.lead_id} was converted concurrently")
        else:
            raise TypeError(f"Unknown mutation {m!r}")
    return created


# ════════════════════════════════════════════════
# VEHICLES
# ════════════════════════════════════════════════

async def create_vehicle(db: AsyncSession, data: VehicleIn) -> Vehicle:
    if data.status not in MANUAL_VEHICLE_STATUSES:
        raise ValidationError(
            f"New vehicles start as DRAFT or ACTIVE, not {data.status.value}",
            {"status": "must be DRAFT or ACTIVE"},
        )
    async with transaction(db):
        number = await next_value(db, "vehicle")
        vehicle = Vehicle(
            **data.model_dump(exclude={"images"}),
            vehicle_number=number,
            slug=slugify(data.manufacturer, data.model, number),
        )
        db.add(vehicle)
        await db.flush()
        await _replace_images(db, vehicle.id, data.images)
    logger.info(f"Created vehicle {number} ({vehicle.slug})")
    return vehicle


async def get_vehicle(db: AsyncSession, vehicle_id: int) -> Vehicle:
    return await _require(db, Vehicle, vehicle_id)


async def list_vehicles(db: AsyncSession, status: VehicleStatus | None = None) -> list[Vehicle]:
    stmt = select(Vehicle).order_by(Vehicle.vehicle_number)
    if status is not None:
        stmt = stmt.where(Vehicle.status == status)
    return list((await db.execute(stmt)).scalars().all())


async def vehicle_image_urls(db: AsyncSession, vehicle_id: int) -> list[str]:
    return (await _image_urls(db, [vehicle_id]))[vehicle_id]


async def update_vehicle(db: AsyncSession, vehicle_id: int, data: VehicleUpdate) -> Vehicle:
    changes = data.model_dump(exclude_unset=True)
    images = data.images if "images" in changes else None
    changes.pop("images", None)
    target = changes.pop("status", None)

    async with transaction(db):
        vehicle = await _require(db, Vehicle, vehicle_id)

        if target is not None and target != vehicle.status:
            if target not in MANUAL_VEHICLE_STATUSES or vehicle.status not in MANUAL_VEHICLE_STATUSES:
                raise Conflict(
                    f"Vehicle {vehicle.vehicle_number} is {vehicle.status.value}; "
                    f"RESERVED and SOLD are set by contracts only"
                )
            if await _open_purchase_contracts(db, vehicle.id):
                raise Conflict(f"Vehicle {vehicle.vehicle_number} is governed by an open purchase contract")
            await apply_plan(db, LifecyclePlan([
                VehicleStatusChange(vehicle.id, vehicle.status, vehicle.version, target),
            ]))

        for k, v in changes.items():
            setattr(vehicle, k, v)
        if "manufacturer" in changes or "model" in changes:
            vehicle.slug = slugify(vehicle.manufacturer, vehicle.model, vehicle.vehicle_number)
        if images is not None:
            await _replace_images(db, vehicle.id, images)
        await db.flush()

    return await _require(db, Vehicle, vehicle_id)


async def delete_vehicle(db: AsyncSession, vehicle_id: int) -> None:
    """Refused while any contract references the vehicle.

    The version claim after the reference check makes a contract created in
    between (which bumps the version) turn this delete into a Conflict.
    """
    async with transaction(db):
        vehicle = await _require(db, Vehicle, vehicle_id)
        number = vehicle.vehicle_number
        refs = await _reference_count(db, Contract.vehicle_id, vehicle.id)
        if refs:
            raise Conflict(f"Vehicle {number} is referenced by {refs} contract(s)")
        await apply_plan(db, LifecyclePlan([VehicleTouch(vehicle.id, vehicle.version)]))
        await db.execute(update(Lead).where(Lead.vehicle_id == vehicle.id).values(vehicle_id=None))
        await db.execute(delete(VehicleImage).where(VehicleImage.vehicle_id == vehicle.id))
        await db.delete(vehicle)
    logger.info(f"Deleted vehicle {number}")


# ════════════════════════════════════════════════
# CUSTOMERS
# ════════════════════════════════════════════════

async def create_customer(db: AsyncSession, data: CustomerIn) -> Customer:
    async with transaction(db):
        number = await next_value(db, "customer")
        customer = Customer(**data.model_dump(), customer_number=number)
        db.add(customer)
        await db.flush()
    return customer


async def get_customer(db: AsyncSession, customer_id: int) -> Customer:
    return await _require(db, Customer, customer_id)


async def update_customer(db: AsyncSession, customer_id: int, data: CustomerUpdate) -> Customer:
    async with transaction(db):
        customer = await _require(db, Customer, customer_id)
        for k, v in data.model_dump(exclude_unset=True).items():
            setattr(customer, k, v)
        await db.flush()
    return customer


async def delete_customer(db: AsyncSession, customer_id: int) -> None:
    async with transaction(db):
        customer = await _require(db, Customer, customer_id)
        contracts = await _reference_count(db, Contract.customer_id, customer.id)
        invoices = await _reference_count(db, Invoice.customer_id, customer.id)
        if contracts or invoices:
            raise Conflict(f"Customer {customer.customer_number} still has contracts or invoices")
        await apply_plan(db, LifecyclePlan([CustomerTouch(customer.id, customer.version)]))
        await db.execute(update(Lead).where(Lead.customer_id == customer.id).values(customer_id=None))
        await db.delete(customer)
    logger.info(f"Deleted customer {customer.customer_number}")


# ════════════════════════════════════════════════
# CONTRACTS
# ════════════════════════════════════════════════

def _check_contract_prices(net: float, vat: float, gross: float) -> None:
    if not amounts_match(net + vat, gross):
        raise ValidationError(
            "Gross price must equal net price plus VAT",
            {"price_gross": f"expected {round2(net + vat)}"},
        )


async def create_contract(db: AsyncSession, data: ContractIn) -> Contract:
    _check_contract_prices(data.price_net, data.vat, data.price_gross)

    async with transaction(db):
        customer = await _require(db, Customer, data.customer_id)
        vehicle = await _require(db, Vehicle, data.vehicle_id)
        open_count = 0
        if data.type == ContractType.PURCHASE:
            open_count = await _open_purchase_contracts(db, vehicle.id)

        plan = plan_contract_creation(data.type, data.status, vehicle, customer, open_count)
        await apply_plan(db, plan)

        number = await next_value(db, "contract")
        contract = Contract(
            **data.model_dump(exclude={"contract_date"}),
            contract_date=data.contract_date or today(),
            contract_number=number,
        )
        db.add(contract)
        await db.flush()

    logger.info(
        f"Created {data.type.value} contract {format_contract_number(number)} "
        f"({data.status.value}) for vehicle {vehicle.vehicle_number}"
    )
    return contract


async def get_contract(db: AsyncSession, contract_id: int) -> Contract:
    return await _require(db, Contract, contract_id)


async def transition_contract(db: AsyncSession, contract_id: int, target: ContractStatus) -> Contract:
    async with transaction(db):
        contract = await _require(db, Contract, contract_id)
        vehicle = await db.get(Vehicle, contract.vehicle_id, populate_existing=True)
        customer = await db.get(Customer, contract.customer_id, populate_existing=True)
        plan = plan_contract_transition(contract, target, vehicle, customer)
        await apply_plan(db, plan)
        previous = contract.status

    logger.info(
        f"Contract {format_contract_number(contract.contract_number)}: "
        f"{previous.value} -> {target.value}"
    )
    return await _require(db, Contract, contract_id)


async def update_contract(db: AsyncSession, contract_id: int, data: ContractUpdate) -> Contract:
    """Edit the terms of a DRAFT or ACTIVE contract.

    Prices are re-checked against the stored values they are combined with.
    The write is a compare-and-swap on the status read here, so a contract
    completed or cancelled in the meantime is not edited.
    """
    changes = {
        k: v for k, v in data.model_dump(exclude_unset=True).items()
        if v is not None or k in CLEARABLE_CONTRACT_FIELDS
    }
    async with transaction(db):
        contract = await _require(db, Contract, contract_id)
        number = format_contract_number(contract.contract_number)
        if contract.status not in EDITABLE_CONTRACT_STATUSES:
            raise Conflict(f"Contract {number} is {contract.status.value} and can no longer be edited")
        _check_contract_prices(
            changes.get("price_net", contract.price_net),
            changes.get("vat", contract.vat),
            changes.get("price_gross", contract.price_gross),
        )
        if changes:
            res = await db.execute(
                update(Contract)
                .where(Contract.id == contract.id, Contract.status == contract.status)
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise Conflict(f"Contract {number} changed concurrently")

    logger.info(f"Updated contract {number}: {', '.join(sorted(changes)) or 'no changes'}")
    return await _require(db, Contract, contract_id)


async def delete_contract(db: AsyncSession, contract_id: int) -> None:
    async with transaction(db):
        contract = await _require(db, Contract, contract_id)
        number = format_contract_number(contract.contract_number)
        if contract.status not in (ContractStatus.DRAFT, ContractStatus.CANCELLED):
            raise Conflict(
                f"Contract {number} is {contract.status.value}; "
                f"only drafts and cancelled contracts can be deleted"
            )
        customer = await _require(db, Customer, contract.customer_id)
        if await _reference_count(db, Invoice.contract_id, contract.id):
            raise Conflict(f"Contract {number} still has invoices")
        # Invoices claim the customer too, so this serialises against a new invoice.
        await apply_plan(db, LifecyclePlan([CustomerTouch(customer.id, customer.version)]))
        res = await db.execute(
            delete(Contract)
            .where(Contract.id == contract.id, Contract.status == contract.status)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise Conflict(f"Contract {number} changed concurrently")
    db.expunge(contract)
    logger.info(f"Deleted contract {number}")


# ════════════════════════════════════════════════
# LEADS
# ════════════════════════════════════════════════

async def create_lead(db: AsyncSession, data: LeadIn) -> Lead:
    async with transaction(db):
        if data.vehicle_id is not None:
            await _require(db, Vehicle, data.vehicle_id)
        lead = Lead(**data.model_dump())
        db.add(lead)
        await db.flush()
    return lead


async def update_lead_status(db: AsyncSession, lead_id: int, status: LeadStatus) -> Lead:
    async with transaction(db):
        lead = await _require(db, Lead, lead_id)
        if lead.customer_id is not None and status != LeadStatus.COMPLETED:
            raise Conflict(f"Lead {lead.id} was converted and cannot be reopened")
        lead.status = status
        await db.flush()
    return lead


async def convert_lead(db: AsyncSession, lead_id: int) -> Customer:
    """Idempotent: a lead converted before (or concurrently) yields its customer."""
    try:
        async with transaction(db):
            lead = await _require(db, Lead, lead_id)
            plan = plan_lead_conversion(lead)
            if plan.existing_customer_id is not None:
                return await _require(db, Customer, plan.existing_customer_id)
            created = await apply_plan(db, plan)
    except Conflict:
        lead = await _require(db, Lead, lead_id)
        if lead.customer_id is None:
            raise
        return await _require(db, Customer, lead.customer_id)

    customer = created["customer"]
    logger.info(f"Converted lead {lead_id} into customer {customer.customer_number}")
    return customer


async def delete_lead(db: AsyncSession, lead_id: int) -> None:
    async with transaction(db):
        lead = await _require(db, Lead, lead_id)
        await db.delete(lead)
    logger.info(f"Deleted lead {lead_id}")


# ════════════════════════════════════════════════
# INVOICES
# ════════════════════════════════════════════════

def invoice_amounts(data: InvoiceIn, vat_rate: float = VAT_RATE) -> tuple[list[dict], float, float, float]:
    """Resolve position totals and net/vat/gross, checking they agree.

    Returns (positions, net, vat, gross). Raises ValidationError naming every
    inconsistent field.
    """
    problems: dict[str, str] = {}
    positions = []
    for i, p in enumerate(data.positions):
        expected = round2(p.quantity * p.unit_price)
        total = round2(p.total) if p.total is not None else expected
        if not amounts_match(total, expected):
            problems[f"positions.{i}.total"] = f"expected {expected}"
        positions.append({
            "position": i, "description": p.description, "quantity": p.quantity,
            "unit_price": round2(p.unit_price), "total": total,
        })
    positions_sum = round2(sum(p["total"] for p in positions))

    gross = round2(data.gross_amount) if data.gross_amount is not None else positions_sum
    if not amounts_match(gross, positions_sum):
        problems["gross_amount"] = f"positions add up to {positions_sum}"

    net, vat = data.net_amount, data.vat_amount
    if net is None and vat is None:
        net = round2(gross / (1 + vat_rate))
        vat = round2(gross - net)
    elif net is None:
        net = round2(gross - vat)
    elif vat is None:
        vat = round2(gross - net)
    net, vat = round2(net), round2(vat)
    if not amounts_match(net + vat, gross):
        problems["vat_amount"] = f"net + vat must equal gross ({gross})"

    if problems:
        raise ValidationError("Invoice amounts are inconsistent", problems)
    return positions, net, vat, gross


async def create_invoice(db: AsyncSession, data: InvoiceIn) -> Invoice:
    if data.status not in INITIAL_INVOICE_STATUSES:
        raise ValidationError(
            f"Invoices start as DRAFT or OPEN, not {data.status.value}",
            {"status": "must be DRAFT or OPEN"},
        )
    positions, net, vat, gross = invoice_amounts(data)
    invoice_date = data.invoice_date or today()

    async with transaction(db):
        customer = await _require(db, Customer, data.customer_id)
        if data.contract_id is not None:
            contract = await _require(db, Contract, data.contract_id)
            if contract.customer_id != customer.id:
                raise ValidationError(
                    "Contract belongs to another customer",
                    {"contract_id": f"contract {data.contract_id} is not customer {customer.id}'s"},
                )
        await apply_plan(db, LifecyclePlan([CustomerTouch(customer.id, customer.version)]))
        seq = await next_value(db, "invoice", str(invoice_date.year))
        invoice = Invoice(
            invoice_number=format_invoice_number(invoice_date.year, seq),
            customer_id=customer.id,
            contract_id=data.contract_id,
            net_amount=net, vat_amount=vat, gross_amount=gross,
            invoice_date=invoice_date,
            due_date=data.due_date,
            status=data.status,
        )
        db.add(invoice)
        await db.flush()
        for p in positions:
            db.add(InvoicePosition(invoice_id=invoice.id, **p))
        await db.flush()

    logger.info(f"Created invoice {invoice.invoice_number} over {gross:.2f}")
    return invoice


async def get_invoice(db: AsyncSession, invoice_id: int) -> Invoice:
    return await _require(db, Invoice, invoice_id)


async def invoice_positions(db: AsyncSession, invoice_id: int) -> list[InvoicePosition]:
    return list((await db.execute(
        select(InvoicePosition)
        .where(InvoicePosition.invoice_id == invoice_id)
        .order_by(InvoicePosition.position, InvoicePosition.id)
    )).scalars().all())


async def transition_invoice(
    db: AsyncSession, invoice_id: int, target: InvoiceStatus, paid_on: date | None = None,
) -> Invoice:
    async with transaction(db):
        invoice = await _require(db, Invoice, invoice_id)
        if target not in INVOICE_TRANSITIONS[invoice.status]:
            raise Conflict(
                f"Invoice {invoice.invoice_number} cannot go from {invoice.status.value} to {target.value}"
            )
        values: dict = {"status": target}
        if target == InvoiceStatus.PAID:
            values["paid_date"] = paid_on or today()
        res = await db.execute(
            update(Invoice)
            .where(Invoice.id == invoice.id, Invoice.status == invoice.status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise Conflict(f"Invoice {invoice.invoice_number} changed concurrently")
    return await _require(db, Invoice, invoice_id)


async def update_invoice(db: AsyncSession, invoice_id: int, data: InvoiceUpdate) -> Invoice:
    """Edit a DRAFT invoice; its number never changes.

    When positions or any aggregate are sent, the amounts are validated again
    the way create_invoice does it: aggregates left out are re-derived from
    the (new or stored) positions.
    """
    changes = data.model_dump(exclude_unset=True)
    async with transaction(db):
        invoice = await _require(db, Invoice, invoice_id)
        if invoice.status != InvoiceStatus.DRAFT:
            raise Conflict(f"Invoice {invoice.invoice_number} is {invoice.status.value}; only drafts can be edited")

        values: dict = {}
        if changes.get("invoice_date") is not None:
            values["invoice_date"] = changes["invoice_date"]
        if "due_date" in changes:
            values["due_date"] = changes["due_date"]

        positions = None
        if INVOICE_AMOUNT_FIELDS & changes.keys():
            source = data.positions
            if source is None:
                source = [
                    InvoicePositionIn(description=p.description, quantity=p.quantity,
                                      unit_price=p.unit_price, total=p.total)
                    for p in await invoice_positions(db, invoice.id)
                ]
            merged = InvoiceIn(
                customer_id=invoice.customer_id, contract_id=invoice.contract_id, positions=source,
                net_amount=data.net_amount, vat_amount=data.vat_amount, gross_amount=data.gross_amount,
            )
            positions, net, vat, gross = invoice_amounts(merged)
            values.update(net_amount=net, vat_amount=vat, gross_amount=gross)

        if values:
            res = await db.execute(
                update(Invoice)
                .where(Invoice.id == invoice.id, Invoice.status == InvoiceStatus.DRAFT)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise Conflict(f"Invoice {invoice.invoice_number} changed concurrently")
        if data.positions is not None:
            await db.execute(delete(InvoicePosition).where(InvoicePosition.invoice_id == invoice.id))
            for p in positions:
                db.add(InvoicePosition(invoice_id=invoice.id, **p))
            await db.flush()
        number = invoice.invoice_number

    logger.info(f"Updated draft invoice {number}")
    return await _require(db, Invoice, invoice_id)


async def delete_invoice(db: AsyncSession, invoice_id: int) -> None:
    async with transaction(db):
        invoice = await _require(db, Invoice, invoice_id)
        if invoice.status != InvoiceStatus.DRAFT:
            raise Conflict(f"Invoice {invoice.invoice_number} is {invoice.status.value}; only drafts can be deleted")
        await db.execute(delete(InvoicePosition).where(InvoicePosition.invoice_id == invoice.id))
        await db.delete(invoice)


# ════════════════════════════════════════════════
# SNAPSHOTS (read side for export + documents)
# ════════════════════════════════════════════════

async def load_vehicle_views(db: AsyncSession, vehicles: list[Vehicle]) -> list[VehicleView]:
    urls = await _image_urls(db, [v.id for v in vehicles])
    return [VehicleView.from_row(v, urls[v.id]) for v in vehicles]


async def select_export_vehicles(
    db: AsyncSession, export_flag: str, vehicle_ids: list[int] | None = None,
) -> list[VehicleView]:
    """Vehicles for a marketplace feed, ordered by vehicle number.

    With ids: exactly those vehicles (any missing id is NotFound). Without:
    every ACTIVE vehicle whose `export_flag` column is set.
    """
    stmt = select(Vehicle).order_by(Vehicle.vehicle_number)
    if vehicle_ids:
        stmt = stmt.where(Vehicle.id.in_(vehicle_ids))
    else:
        stmt = stmt.where(Vehicle.status == VehicleStatus.ACTIVE, getattr(Vehicle, export_flag).is_(True))
    vehicles = list((await db.execute(stmt)).scalars().all())
    if vehicle_ids:
        missing = sorted(set(vehicle_ids) - {v.id for v in vehicles})
        if missing:
            raise NotFound(f"Vehicles not found: {', '.join(str(i) for i in missing)}")
    if not vehicles:
        raise NotFound("No vehicles to export")
    return await load_vehicle_views(db, vehicles)


async def export_vehicles(
    db: AsyncSession, schema_id: str, vehicle_ids: list[int] | None = None, day: date | None = None,
) -> tuple[bytes, str]:
    """CSV feed for one marketplace. Returns (payload, filename)."""
    schema = get_schema(schema_id)
    views = await select_export_vehicles(db, schema.export_flag, vehicle_ids)
    return export_csv(views, schema.schema_id, day or today())


async def load_contract_snapshot(db: AsyncSession, contract_id: int) -> ContractSnapshot:
    contract = await _require(db, Contract, contract_id)
    customer = await _require(db, Customer, contract.customer_id)
    vehicle = await _require(db, Vehicle, contract.vehicle_id)
    (vehicle_view,) = await load_vehicle_views(db, [vehicle])
    return ContractSnapshot(
        contract=ContractView.from_row(contract),
        customer=PartyView.from_row(customer),
        vehicle=vehicle_view,
    )


async def load_invoice_snapshot(db: AsyncSession, invoice_id: int) -> InvoiceSnapshot:
    invoice = await _require(db, Invoice, invoice_id)
    customer = await _require(db, Customer, invoice.customer_id)
    positions = await invoice_positions(db, invoice.id)
    contract_view = vehicle_view = None
    if invoice.contract_id is not None:
        contract = await _require(db, Contract, invoice.contract_id)
        contract_view = ContractView.from_row(contract)
        vehicle = await db.get(Vehicle, contract.vehicle_id)
        if vehicle is not None:
            (vehicle_view,) = await load_vehicle_views(db, [vehicle])
    return InvoiceSnapshot(
        invoice=InvoiceView.from_row(invoice),
        customer=PartyView.from_row(customer),
        positions=tuple(PositionView.from_row(p) for p in positions),
        contract=contract_view,
        vehicle=vehicle_view,
    )


# ════════════════════════════════════════════════
# LISTINGS
# ════════════════════════════════════════════════

async def _list(db: AsyncSession, model, order_by, *where) -> list:
    return list((await db.execute(select(model).where(*where).order_by(order_by))).scalars().all())


async def list_customers(
    db: AsyncSession,
    search: str | None = None,
    customer_type: CustomerType | None = None,
    role: CustomerRole | None = None,
) -> list[Customer]:
    """Customers by number; `search` is a case-insensitive substring match
    over name, company, email and phone."""
    where = []
    if search and search.strip():
        term = search.strip()
        where.append(or_(*(col.icontains(term, autoescape=True) for col in CUSTOMER_SEARCH_COLUMNS)))
    if customer_type is not None:
        where.append(Customer.type == customer_type)
    if role is not None:
        where.append(Customer.role == role)
    return await _list(db, Customer, Customer.customer_number, *where)


async def list_contracts(db: AsyncSession, status: ContractStatus | None = None) -> list[Contract]:
    where = [Contract.status == status] if status is not None else []
    return await _list(db, Contract, Contract.contract_number.desc(), *where)


async def list_invoices(db: AsyncSession, status: InvoiceStatus | None = None) -> list[Invoice]:
    where = [Invoice.status == status] if status is not None else []
    return await _list(db, Invoice, Invoice.id.desc(), *where)


async def list_leads(db: AsyncSession, status: LeadStatus | None = None) -> list[Lead]:
    where = [Lead.status == status] if status is not None else []
    return await _list(db, Lead, Lead.id.desc(), *where)


# ════════════════════════════════════════════════
# DASHBOARD
# ════════════════════════════════════════════════

async def _count_by_status(db: AsyncSession, model) -> dict[str, int]:
    rows = (await db.execute(select(model.status, func.count(model.id)).group_by(model.status))).all()
    return {status.value: n for status, n in rows}


async def _sum(db: AsyncSession, column, *where) -> float:
    return round2((await db.execute(select(func.coalesce(func.sum(column), 0.0)).where(*where))).scalar_one())


async def dashboard_stats(db: AsyncSession) -> dict:
    return {
        "vehicles": await _count_by_status(db, Vehicle),
        "contracts": await _count_by_status(db, Contract),
        "invoices": await _count_by_status(db, Invoice),
        "leads": await _count_by_status(db, Lead),
        "stock_value": await _sum(db, Vehicle.selling_price, Vehicle.status == VehicleStatus.ACTIVE),
        "completed_contract_value": await _sum(db, Contract.price_gross, Contract.status == ContractStatus.COMPLETED),
        "revenue": await _sum(db, Invoice.gross_amount, Invoice.status == InvoiceStatus.PAID),
        "open_receivables": await _sum(db, Invoice.gross_amount, Invoice.status == InvoiceStatus.OPEN),
    }
