"""Service-layer tests against a real SQLite store."""

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from backoffice import services
from backoffice.enums import (
    ContractStatus, ContractType, CustomerRole, CustomerType, InvoiceStatus, LeadStatus, LeadType,
    VehicleStatus,
)
from backoffice.errors import Conflict, NotFound, ValidationError
from backoffice.schemas import (
    ContractUpdate, InvoiceIn, InvoicePositionIn, InvoiceUpdate, LeadIn, VehicleUpdate,
)


def invoice_in(customer, **overrides) -> InvoiceIn:
    data = {
        "customer_id": customer.id,
        "invoice_date": date(2026, 5, 4),
        "due_date": date(2026, 5, 18),
        "positions": [
            InvoicePositionIn(description="BMW 320d Touring", quantity=1, unit_price=24990.0),
            InvoicePositionIn(description="Fußmatten", quantity=2, unit_price=45.0),
        ],
    }
    data.update(overrides)
    return InvoiceIn(**data)


# ── Vehicles and customers ────────────────────────────────────


class TestVehicles:
    async def test_numbers_and_slug(self, new_vehicle):
        first = await new_vehicle()
        second = await new_vehicle(manufacturer="Škoda", model="Octavia")
        assert (first.vehicle_number, second.vehicle_number) == (1, 2)
        assert first.slug == "bmw-320d-1"
        assert second.version == 1

    async def test_cannot_create_reserved(self, new_vehicle):
        with pytest.raises(ValidationError):
            await new_vehicle(status="RESERVED")

    async def test_manual_status_change_bumps_version(self, db, new_vehicle):
        v = await new_vehicle(status="DRAFT")
        updated = await services.update_vehicle(db, v.id, VehicleUpdate(status=VehicleStatus.ACTIVE, mileage=90000))
        assert updated.status == VehicleStatus.ACTIVE
        assert updated.version == 2
        assert updated.mileage == 90000

    async def test_manual_sold_is_rejected(self, db, new_vehicle):
        v = await new_vehicle()
        with pytest.raises(Conflict):
            await services.update_vehicle(db, v.id, VehicleUpdate(status=VehicleStatus.SOLD))

    async def test_reserved_vehicle_cannot_be_unlisted(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        await new_contract(v, c)
        with pytest.raises(Conflict):
            await services.update_vehicle(db, v.id, VehicleUpdate(status=VehicleStatus.DRAFT))

    async def test_delete_with_contract_is_rejected(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        await new_contract(v, c, status=ContractStatus.DRAFT)
        with pytest.raises(Conflict):
            await services.delete_vehicle(db, v.id)

    async def test_delete(self, db, new_vehicle):
        v = await new_vehicle(images=2)
        await services.delete_vehicle(db, v.id)
        with pytest.raises(NotFound):
            await services.get_vehicle(db, v.id)

    async def test_contract_created_during_delete_wins(
        self, db, session_factory, monkeypatch, new_vehicle, new_customer, contract_data
    ):
        v, c = await new_vehicle(), await new_customer()
        vid = v.id
        data = contract_data(v, c, status=ContractStatus.DRAFT)
        count = services._reference_count

        async def count_then_add_contract(session, column, entity_id):
            n = await count(session, column, entity_id)
            async with session_factory() as other:
                await services.create_contract(other, data)
            return n

        monkeypatch.setattr(services, "_reference_count", count_then_add_contract)
        with pytest.raises(Conflict):
            await services.delete_vehicle(db, vid)

        async with session_factory() as s:
            assert (await services.get_vehicle(s, vid)).status == VehicleStatus.ACTIVE
            (contract,) = await services.list_contracts(s)
            assert contract.vehicle_id == vid

    async def test_customer_numbers(self, new_customer):
        a, b = await new_customer(), await new_customer(last_name="Meyer")
        assert (a.customer_number, b.customer_number) == (1, 2)
        assert a.role == CustomerRole.PROSPECT

    async def test_customer_search_and_filters(self, db, new_customer):
        await new_customer(first_name="Anna", last_name="Schmidt", email="anna@example.de")
        await new_customer(first_name="Jonas", last_name="Meyer", email="j.meyer@firma.de",
                           company="Autohaus Meyer KG", type="BUSINESS", phone="0421 555 100")
        await new_customer(first_name="Lena", last_name="100%_Test", email=None)

        async def names(**kw):
            return [c.last_name for c in await services.list_customers(db, **kw)]

        assert await names(search="SCHMI") == ["Schmidt"]
        assert await names(search="autohaus") == ["Meyer"]
        assert await names(search="555 1") == ["Meyer"]
        assert await names(search="firma.de") == ["Meyer"]
        assert await names(search="100%_") == ["100%_Test"]
        assert await names(search="   ") == ["Schmidt", "Meyer", "100%_Test"]
        assert await names(customer_type=CustomerType.BUSINESS) == ["Meyer"]
        assert await names(search="a", role=CustomerRole.BUYER) == []

    async def test_customer_delete_rules(self, db, new_vehicle, new_customer, new_contract):
        v, kept, gone = await new_vehicle(), await new_customer(), await new_customer(last_name="Meyer")
        kept_id, gone_id = kept.id, gone.id
        await new_contract(v, kept, status=ContractStatus.DRAFT)
        with pytest.raises(Conflict):
            await services.delete_customer(db, kept_id)
        await services.delete_customer(db, gone_id)
        with pytest.raises(NotFound):
            await services.get_customer(db, gone_id)
        assert (await services.get_customer(db, kept_id)).last_name == "Schmidt"

    async def test_invoice_created_during_customer_delete_wins(
        self, db, session_factory, monkeypatch, new_customer
    ):
        c = await new_customer()
        cid, data = c.id, invoice_in(c)
        count = services._reference_count
        added = []

        async def count_then_add_invoice(session, column, entity_id):
            n = await count(session, column, entity_id)
            if not added:
                async with session_factory() as other:
                    added.append((await services.create_invoice(other, data)).id)
            return n

        monkeypatch.setattr(services, "_reference_count", count_then_add_invoice)
        with pytest.raises(Conflict):
            await services.delete_customer(db, cid)

        async with session_factory() as s:
            assert (await services.get_customer(s, cid)).id == cid
            assert [i.id for i in await services.list_invoices(s)] == added


# ── Contract lifecycle ────────────────────────────────────────


class TestContractLifecycle:
    async def test_sale_scenario(self, db, new_vehicle, new_customer, new_contract):
        v = await new_vehicle()
        buyer, other = await new_customer(), await new_customer(last_name="Meyer")
        # A rejected write rolls back and expires every loaded row; keep plain ids.
        vid, buyer_id = v.id, buyer.id

        c1 = await new_contract(v, buyer)
        c1_id = c1.id
        assert (await services.get_vehicle(db, vid)).status == VehicleStatus.RESERVED
        assert (await services.get_customer(db, buyer_id)).role == CustomerRole.BUYER

        with pytest.raises(Conflict):
            await new_contract(v, other, status=ContractStatus.DRAFT)
        unchanged = await services.get_vehicle(db, vid)
        assert unchanged.status == VehicleStatus.RESERVED

        await services.transition_contract(db, c1_id, ContractStatus.COMPLETED)
        assert (await services.get_vehicle(db, vid)).status == VehicleStatus.SOLD

        with pytest.raises(Conflict):
            await services.transition_contract(db, c1_id, ContractStatus.CANCELLED)
        assert (await services.get_contract(db, c1_id)).status == ContractStatus.COMPLETED
        assert (await services.get_vehicle(db, vid)).status == VehicleStatus.SOLD

    async def test_rejected_contract_consumes_no_number(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        vid, cid = v.id, c.id
        first = await new_contract(v, c)
        first_id, first_number = first.id, first.contract_number
        with pytest.raises(Conflict):
            await new_contract(v, c)
        await services.transition_contract(db, first_id, ContractStatus.CANCELLED)
        v, c = await services.get_vehicle(db, vid), await services.get_customer(db, cid)
        second = await new_contract(v, c)
        assert (first_number, second.contract_number) == (1, 2)

    async def test_cancel_restores_active(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        contract = await new_contract(v, c)
        await services.transition_contract(db, contract.id, ContractStatus.CANCELLED)
        vehicle = await services.get_vehicle(db, v.id)
        assert vehicle.status == VehicleStatus.ACTIVE
        # Reserve + release, each a compare-and-swap bump.
        assert vehicle.version == 3

    async def test_draft_then_activate(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        contract = await new_contract(v, c, status=ContractStatus.DRAFT)
        assert (await services.get_vehicle(db, v.id)).status == VehicleStatus.ACTIVE
        await services.transition_contract(db, contract.id, ContractStatus.ACTIVE)
        assert (await services.get_vehicle(db, v.id)).status == VehicleStatus.RESERVED

    async def test_gross_must_match(self, db, new_vehicle, new_customer, contract_data):
        v, c = await new_vehicle(), await new_customer()
        with pytest.raises(ValidationError) as exc:
            await services.create_contract(db, contract_data(v, c, price_gross=25000.0))
        assert "price_gross" in exc.value.fields
        assert (await services.get_vehicle(db, v.id)).status == VehicleStatus.ACTIVE

    async def test_missing_vehicle(self, db, new_vehicle, new_customer, contract_data):
        v, c = await new_vehicle(), await new_customer()
        data = contract_data(v, c).model_copy(update={"vehicle_id": 999})
        with pytest.raises(NotFound):
            await services.create_contract(db, data)

    async def test_acquisition_makes_seller(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        await new_contract(v, c, type=ContractType.ACQUISITION)
        assert (await services.get_customer(db, c.id)).role == CustomerRole.SELLER
        assert (await services.get_vehicle(db, v.id)).status == VehicleStatus.ACTIVE

    async def test_update_terms_rechecks_prices(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        contract_id = (await new_contract(v, c)).id
        updated = await services.update_contract(db, contract_id, ContractUpdate(
            price_net=21008.4, vat=3991.6, price_gross=25000.0,
            delivery_date=date(2026, 5, 20), payment_terms="Überweisung",
        ))
        assert updated.price_gross == pytest.approx(25000.0)
        assert updated.delivery_date == date(2026, 5, 20)
        assert updated.status == ContractStatus.ACTIVE

        with pytest.raises(ValidationError) as exc:
            await services.update_contract(db, contract_id, ContractUpdate(price_gross=26000.0))
        assert "price_gross" in exc.value.fields
        assert (await services.get_contract(db, contract_id)).price_gross == pytest.approx(25000.0)

        cleared = await services.update_contract(db, contract_id, ContractUpdate(payment_terms=None))
        assert cleared.payment_terms is None
        assert cleared.delivery_date == date(2026, 5, 20)

    async def test_closed_contract_cannot_be_edited(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        contract_id = (await new_contract(v, c)).id
        await services.transition_contract(db, contract_id, ContractStatus.COMPLETED)
        with pytest.raises(Conflict):
            await services.update_contract(db, contract_id, ContractUpdate(notes="zu spät"))
        assert (await services.get_contract(db, contract_id)).notes is None

    async def test_concurrent_purchases_exactly_one_wins(
        self, session_factory, new_vehicle, new_customer, contract_data
    ):
        v = await new_vehicle()
        customers = [await new_customer(last_name=f"Kunde{i}") for i in range(4)]

        async def attempt(customer):
            async with session_factory() as s:
                return await services.create_contract(s, contract_data(v, customer))

        results = await asyncio.gather(*(attempt(c) for c in customers), return_exceptions=True)
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(e, Conflict) for e in losers)

        async with session_factory() as s:
            assert (await services.get_vehicle(s, v.id)).status == VehicleStatus.RESERVED
            assert len(await services.list_contracts(s)) == 1

    async def test_concurrent_complete_and_cancel(self, session_factory, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        contract = await new_contract(v, c)

        async def move(target):
            async with session_factory() as s:
                return await services.transition_contract(s, contract.id, target)

        results = await asyncio.gather(
            move(ContractStatus.COMPLETED), move(ContractStatus.CANCELLED), return_exceptions=True
        )
        assert sum(not isinstance(r, Exception) for r in results) == 1
        async with session_factory() as s:
            final = (await services.get_contract(s, contract.id)).status
            vehicle = await services.get_vehicle(s, v.id)
        expected = VehicleStatus.SOLD if final == ContractStatus.COMPLETED else VehicleStatus.ACTIVE
        assert vehicle.status == expected

    async def test_delete_rules(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        contract_id = (await new_contract(v, c)).id
        with pytest.raises(Conflict):
            await services.delete_contract(db, contract_id)
        await services.transition_contract(db, contract_id, ContractStatus.CANCELLED)
        await services.delete_contract(db, contract_id)
        with pytest.raises(NotFound):
            await services.get_contract(db, contract_id)


# ── Leads ─────────────────────────────────────────────────────


class TestLeads:
    async def _lead(self, db, **kw):
        data = {"type": LeadType.VEHICLE_INQUIRY, "name": "Jan de Vries",
                "email": "jan@example.nl", "message": "Testfahrt am Samstag?", **kw}
        return await services.create_lead(db, LeadIn(**data))

    async def test_convert_is_idempotent(self, db):
        lead = await self._lead(db)
        first = await services.convert_lead(db, lead.id)
        again = await services.convert_lead(db, lead.id)
        assert first.id == again.id
        assert first.last_name == "Vries"
        assert "Jan de Vries" in first.notes
        assert len(await services.list_customers(db)) == 1
        converted = (await services.list_leads(db))[0]
        assert converted.status == LeadStatus.COMPLETED
        assert converted.customer_id == first.id

    async def test_concurrent_conversion_creates_one_customer(self, db, session_factory):
        lead = await self._lead(db)

        async def convert():
            async with session_factory() as s:
                return await services.convert_lead(s, lead.id)

        a, b = await asyncio.gather(convert(), convert())
        assert a.id == b.id
        assert len(await services.list_customers(db)) == 1

    async def test_converted_lead_cannot_be_reopened(self, db):
        lead = await self._lead(db)
        await services.convert_lead(db, lead.id)
        with pytest.raises(Conflict):
            await services.update_lead_status(db, lead.id, LeadStatus.IN_PROGRESS)

    async def test_delete_lead(self, db):
        lead_id = (await self._lead(db)).id
        await services.delete_lead(db, lead_id)
        assert await services.list_leads(db) == []
        with pytest.raises(NotFound):
            await services.delete_lead(db, lead_id)

    async def test_lead_for_missing_vehicle(self, db):
        with pytest.raises(NotFound):
            await self._lead(db, vehicle_id=404)


# ── Invoices ──────────────────────────────────────────────────


class TestInvoices:
    async def test_totals_are_derived_and_consistent(self, db, new_customer):
        c = await new_customer()
        inv = await services.create_invoice(db, invoice_in(c))
        assert inv.gross_amount == pytest.approx(25080.0)
        assert inv.net_amount + inv.vat_amount == pytest.approx(inv.gross_amount, abs=0.01)
        positions = await services.invoice_positions(db, inv.id)
        assert sum(p.total for p in positions) == pytest.approx(inv.gross_amount, abs=0.01)

    async def test_numbers_reset_each_year(self, db, new_customer):
        c = await new_customer()
        a = await services.create_invoice(db, invoice_in(c, invoice_date=date(2025, 12, 30)))
        b = await services.create_invoice(db, invoice_in(c, invoice_date=date(2025, 12, 31)))
        n = await services.create_invoice(db, invoice_in(c, invoice_date=date(2026, 1, 2)))
        assert [a.invoice_number, b.invoice_number, n.invoice_number] == [
            "INV-2025-0001", "INV-2025-0002", "INV-2026-0001",
        ]

    async def test_inconsistent_amounts_name_the_fields(self, db, new_customer):
        c = await new_customer()
        with pytest.raises(ValidationError) as exc:
            await services.create_invoice(
                db, invoice_in(c, net_amount=20000.0, vat_amount=3000.0, gross_amount=26000.0)
            )
        assert set(exc.value.fields) == {"gross_amount", "vat_amount"}

    async def test_position_total_mismatch(self, db, new_customer):
        c = await new_customer()
        bad = [InvoicePositionIn(description="Service", quantity=2, unit_price=100.0, total=150.0)]
        with pytest.raises(ValidationError) as exc:
            await services.create_invoice(db, invoice_in(c, positions=bad))
        assert "positions.0.total" in exc.value.fields

    async def test_cent_tolerance(self, db, new_customer):
        c = await new_customer()
        inv = await services.create_invoice(
            db, invoice_in(c, net_amount=21075.63, vat_amount=4004.36, gross_amount=25080.0)
        )
        assert inv.vat_amount == pytest.approx(4004.36)

    async def test_contract_must_belong_to_customer(self, db, new_vehicle, new_customer, new_contract):
        v, buyer, other = await new_vehicle(), await new_customer(), await new_customer(last_name="Meyer")
        contract = await new_contract(v, buyer)
        with pytest.raises(ValidationError):
            await services.create_invoice(db, invoice_in(other, contract_id=contract.id))

    async def test_update_draft_replaces_positions(self, db, new_customer):
        c = await new_customer()
        inv = await services.create_invoice(db, invoice_in(c))
        inv_id, number = inv.id, inv.invoice_number
        updated = await services.update_invoice(db, inv_id, InvoiceUpdate(
            invoice_date=date(2026, 6, 1),
            positions=[InvoicePositionIn(description="Inspektion", quantity=1, unit_price=595.0)],
        ))
        assert updated.invoice_number == number
        assert updated.invoice_date == date(2026, 6, 1)
        assert updated.gross_amount == pytest.approx(595.0)
        assert updated.net_amount == pytest.approx(500.0)
        assert updated.vat_amount == pytest.approx(95.0)
        positions = await services.invoice_positions(db, inv_id)
        assert [p.description for p in positions] == ["Inspektion"]

    async def test_update_aggregates_against_stored_positions(self, db, new_customer):
        c = await new_customer()
        inv_id = (await services.create_invoice(db, invoice_in(c))).id
        updated = await services.update_invoice(db, inv_id, InvoiceUpdate(net_amount=21000.0))
        assert updated.gross_amount == pytest.approx(25080.0)
        assert updated.vat_amount == pytest.approx(4080.0)

        with pytest.raises(ValidationError) as exc:
            await services.update_invoice(db, inv_id, InvoiceUpdate(gross_amount=100.0))
        assert "gross_amount" in exc.value.fields
        assert (await services.get_invoice(db, inv_id)).gross_amount == pytest.approx(25080.0)
        assert len(await services.invoice_positions(db, inv_id)) == 2

    async def test_only_drafts_can_be_edited(self, db, new_customer):
        c = await new_customer()
        inv_id = (await services.create_invoice(db, invoice_in(c, status=InvoiceStatus.OPEN))).id
        with pytest.raises(Conflict):
            await services.update_invoice(db, inv_id, InvoiceUpdate(due_date=date(2026, 7, 1)))
        assert (await services.get_invoice(db, inv_id)).due_date == date(2026, 5, 18)

    async def test_payment_flow(self, db, new_customer):
        c = await new_customer()
        inv_id = (await services.create_invoice(db, invoice_in(c))).id
        with pytest.raises(Conflict):
            await services.transition_invoice(db, inv_id, InvoiceStatus.PAID)
        await services.transition_invoice(db, inv_id, InvoiceStatus.OPEN)
        paid = await services.transition_invoice(db, inv_id, InvoiceStatus.PAID, date(2026, 5, 10))
        assert paid.paid_date == date(2026, 5, 10)
        with pytest.raises(Conflict):
            await services.delete_invoice(db, inv_id)

    async def test_contract_with_invoice_cannot_be_deleted(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(), await new_customer()
        contract = await new_contract(v, c, status=ContractStatus.DRAFT)
        await services.create_invoice(db, invoice_in(c, contract_id=contract.id))
        with pytest.raises(Conflict):
            await services.delete_contract(db, contract.id)

    async def test_invoice_created_during_contract_delete_wins(
        self, db, session_factory, monkeypatch, new_vehicle, new_customer, new_contract
    ):
        v, c = await new_vehicle(), await new_customer()
        contract_id = (await new_contract(v, c, status=ContractStatus.DRAFT)).id
        data = invoice_in(c, contract_id=contract_id)
        count = services._reference_count

        async def count_then_add_invoice(session, column, entity_id):
            n = await count(session, column, entity_id)
            async with session_factory() as other:
                await services.create_invoice(other, data)
            return n

        monkeypatch.setattr(services, "_reference_count", count_then_add_invoice)
        with pytest.raises(Conflict):
            await services.delete_contract(db, contract_id)

        async with session_factory() as s:
            assert (await services.get_contract(s, contract_id)).status == ContractStatus.DRAFT
            (invoice,) = await services.list_invoices(s)
            assert invoice.contract_id == contract_id


# ── Read side ─────────────────────────────────────────────────


class TestSnapshotsAndStats:
    async def test_invoice_snapshot_resolves_vehicle(self, db, new_vehicle, new_customer, new_contract):
        v, c = await new_vehicle(images=3), await new_customer()
        contract = await new_contract(v, c)
        inv = await services.create_invoice(db, invoice_in(c, contract_id=contract.id))
        snap = await services.load_invoice_snapshot(db, inv.id)
        assert snap.vehicle.vin == v.vin
        assert len(snap.vehicle.image_urls) == 3
        assert [p.description for p in snap.positions] == ["BMW 320d Touring", "Fußmatten"]

    async def test_dashboard(self, db, new_vehicle, new_customer, new_contract):
        v1, v2, c = await new_vehicle(), await new_vehicle(selling_price=10000.0), await new_customer()
        await new_contract(v1, c)
        stats = await services.dashboard_stats(db)
        assert stats["vehicles"] == {"ACTIVE": 1, "RESERVED": 1}
        assert stats["contracts"] == {"ACTIVE": 1}
        assert stats["stock_value"] == pytest.approx(10000.0)
