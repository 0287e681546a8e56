import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from . import services
from .database import SessionLocal, engine, get_db
from .documents import render
from .enums import ContractStatus, CustomerRole, CustomerType, InvoiceStatus, LeadStatus, VehicleStatus
from .errors import BackofficeError, ValidationError
from .models import Base
from .numbering import PERIODIC_NAMESPACES, Allocator, format_contract_number, format_invoice_number
from .schemas import (
    ContractIn, ContractStatusIn, ContractUpdate, CustomerIn, CustomerUpdate, InvoiceIn,
    InvoiceStatusIn, InvoiceUpdate, LeadIn, LeadStatusIn, VehicleIn, VehicleUpdate,
)
from .utils import today

logger = logging.getLogger("main")


# ─── App setup ───
@asynccontextmanager
async def lifespan(application: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield

app = FastAPI(title="Dealer Back Office", lifespan=lifespan)
app.add_middleware(GZipMiddleware, minimum_size=1000)


def get_allocator() -> Allocator:
    return Allocator(SessionLocal)


# ─── Errors ───
@app.exception_handler(BackofficeError)
async def _backoffice_exc(request: Request, exc: BackofficeError):
    body = {"ok": False, "error": exc.message}
    if isinstance(exc, ValidationError) and exc.fields:
        body["fields"] = exc.fields
    return JSONResponse(body, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def _request_validation_exc(request: Request, exc: RequestValidationError):
    fields = {".".join(str(p) for p in e["loc"][1:]) or "body": e["msg"] for e in exc.errors()}
    return JSONResponse({"ok": False, "error": "Invalid request", "fields": fields}, status_code=422)


@app.exception_handler(Exception)
async def _exc(request: Request, exc: Exception):
    logger.error(f"Unhandled exception at {request.url}: {traceback.format_exc()}")
    return JSONResponse({"ok": False, "error": "Internal error"}, status_code=500)


# ─── Serialisation ───
def _row(obj, **extra) -> dict:
    data = {c.key: getattr(obj, c.key) for c in obj.__table__.columns}
    data.update(extra)
    return data


def _ok(payload: dict | None = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse(jsonable_encoder({"ok": True, **(payload or {})}), status_code=status_code)


async def _vehicle_out(db: AsyncSession, v) -> dict:
    return _row(v, image_urls=await services.vehicle_image_urls(db, v.id))


def _contract_out(c) -> dict:
    return _row(c, number=format_contract_number(c.contract_number))


def _parse_ids(raw: str | None) -> list[int]:
    if not raw:
        return []
    try:
        return [int(p) for p in raw.split(",") if p.strip()]
    except ValueError:
        raise ValidationError("ids must be a comma-separated list of integers", {"ids": "invalid"}) from None


def _attachment(payload: bytes, media_type: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        iter([payload]), media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ════════════════════════════════════════════════
# NUMBERS
# ════════════════════════════════════════════════
@app.post("/api/numbers/{namespace}")
async def allocate_number(namespace: str, year: int | None = None, allocator: Allocator = Depends(get_allocator)):
    period = str(year) if year is not None else ""
    value = await allocator.allocate(namespace, period)
    payload = {"namespace": namespace, "value": value}
    if namespace in PERIODIC_NAMESPACES:
        payload["number"] = format_invoice_number(year, value)
    return _ok(payload)


# ════════════════════════════════════════════════
# VEHICLES
# ════════════════════════════════════════════════
@app.get("/api/vehicles")
async def vehicles_list(status: VehicleStatus | None = None, db: AsyncSession = Depends(get_db)):
    vehicles = await services.list_vehicles(db, status)
    return _ok({"vehicles": [await _vehicle_out(db, v) for v in vehicles]})


@app.post("/api/vehicles")
async def vehicles_create(data: VehicleIn, db: AsyncSession = Depends(get_db)):
    v = await services.create_vehicle(db, data)
    return _ok({"vehicle": await _vehicle_out(db, v)}, status_code=201)


@app.get("/api/vehicles/{vehicle_id}")
async def vehicles_get(vehicle_id: int, db: AsyncSession = Depends(get_db)):
    v = await services.get_vehicle(db, vehicle_id)
    return _ok({"vehicle": await _vehicle_out(db, v)})


@app.patch("/api/vehicles/{vehicle_id}")
async def vehicles_update(vehicle_id: int, data: VehicleUpdate, db: AsyncSession = Depends(get_db)):
    v = await services.update_vehicle(db, vehicle_id, data)
    return _ok({"vehicle": await _vehicle_out(db, v)})


@app.delete("/api/vehicles/{vehicle_id}")
async def vehicles_delete(vehicle_id: int, db: AsyncSession = Depends(get_db)):
    await services.delete_vehicle(db, vehicle_id)
    return _ok()


# ════════════════════════════════════════════════
# CUSTOMERS
# ════════════════════════════════════════════════
@app.get("/api/customers")
async def customers_list(
    search: str | None = None,
    type: CustomerType | None = None,
    role: CustomerRole | None = None,
    db: AsyncSession = Depends(get_db),
):
    customers = await services.list_customers(db, search, type, role)
    return _ok({"customers": [_row(c) for c in customers]})


@app.post("/api/customers")
async def customers_create(data: CustomerIn, db: AsyncSession = Depends(get_db)):
    c = await services.create_customer(db, data)
    return _ok({"customer": _row(c)}, status_code=201)


@app.get("/api/customers/{customer_id}")
async def customers_get(customer_id: int, db: AsyncSession = Depends(get_db)):
    return _ok({"customer": _row(await services.get_customer(db, customer_id))})


@app.patch("/api/customers/{customer_id}")
async def customers_update(customer_id: int, data: CustomerUpdate, db: AsyncSession = Depends(get_db)):
    return _ok({"customer": _row(await services.update_customer(db, customer_id, data))})


@app.delete("/api/customers/{customer_id}")
async def customers_delete(customer_id: int, db: AsyncSession = Depends(get_db)):
    await services.delete_customer(db, customer_id)
    return _ok()


# ════════════════════════════════════════════════
# CONTRACTS
# ════════════════════════════════════════════════
@app.get("/api/contracts")
async def contracts_list(status: ContractStatus | None = None, db: AsyncSession = Depends(get_db)):
    return _ok({"contracts": [_contract_out(c) for c in await services.list_contracts(db, status)]})


@app.post("/api/contracts")
async def contracts_create(data: ContractIn, db: AsyncSession = Depends(get_db)):
    c = await services.create_contract(db, data)
    return _ok({"contract": _contract_out(c)}, status_code=201)


@app.get("/api/contracts/{contract_id}")
async def contracts_get(contract_id: int, db: AsyncSession = Depends(get_db)):
    return _ok({"contract": _contract_out(await services.get_contract(db, contract_id))})


@app.patch("/api/contracts/{contract_id}")
async def contracts_update(contract_id: int, data: ContractUpdate, db: AsyncSession = Depends(get_db)):
    return _ok({"contract": _contract_out(await services.update_contract(db, contract_id, data))})


@app.post("/api/contracts/{contract_id}/status")
async def contracts_status(contract_id: int, data: ContractStatusIn, db: AsyncSession = Depends(get_db)):
    c = await services.transition_contract(db, contract_id, data.status)
    return _ok({"contract": _contract_out(c)})


@app.delete("/api/contracts/{contract_id}")
async def contracts_delete(contract_id: int, db: AsyncSession = Depends(get_db)):
    await services.delete_contract(db, contract_id)
    return _ok()


# ════════════════════════════════════════════════
# LEADS
# ════════════════════════════════════════════════
@app.post("/api/leads")
async def leads_create(data: LeadIn, db: AsyncSession = Depends(get_db)):
    lead = await services.create_lead(db, data)
    return _ok({"lead": _row(lead)}, status_code=201)


@app.get("/api/leads")
async def leads_list(status: LeadStatus | None = None, db: AsyncSession = Depends(get_db)):
    return _ok({"leads": [_row(lead) for lead in await services.list_leads(db, status)]})


@app.post("/api/leads/{lead_id}/status")
async def leads_status(lead_id: int, data: LeadStatusIn, db: AsyncSession = Depends(get_db)):
    return _ok({"lead": _row(await services.update_lead_status(db, lead_id, data.status))})


@app.post("/api/leads/{lead_id}/convert")
async def leads_convert(lead_id: int, db: AsyncSession = Depends(get_db)):
    return _ok({"customer": _row(await services.convert_lead(db, lead_id))})


@app.delete("/api/leads/{lead_id}")
async def leads_delete(lead_id: int, db: AsyncSession = Depends(get_db)):
    await services.delete_lead(db, lead_id)
    return _ok()


# ════════════════════════════════════════════════
# INVOICES
# ════════════════════════════════════════════════
async def _invoice_out(db: AsyncSession, inv) -> dict:
    positions = await services.invoice_positions(db, inv.id)
    return _row(inv, positions=[_row(p) for p in positions])


@app.get("/api/invoices")
async def invoices_list(status: InvoiceStatus | None = None, db: AsyncSession = Depends(get_db)):
    return _ok({"invoices": [_row(i) for i in await services.list_invoices(db, status)]})


@app.post("/api/invoices")
async def invoices_create(data: InvoiceIn, db: AsyncSession = Depends(get_db)):
    inv = await services.create_invoice(db, data)
    return _ok({"invoice": await _invoice_out(db, inv)}, status_code=201)


@app.get("/api/invoices/{invoice_id}")
async def invoices_get(invoice_id: int, db: AsyncSession = Depends(get_db)):
    return _ok({"invoice": await _invoice_out(db, await services.get_invoice(db, invoice_id))})


@app.patch("/api/invoices/{invoice_id}")
async def invoices_update(invoice_id: int, data: InvoiceUpdate, db: AsyncSession = Depends(get_db)):
    inv = await services.update_invoice(db, invoice_id, data)
    return _ok({"invoice": await _invoice_out(db, inv)})


@app.post("/api/invoices/{invoice_id}/status")
async def invoices_status(invoice_id: int, data: InvoiceStatusIn, db: AsyncSession = Depends(get_db)):
    inv = await services.transition_invoice(db, invoice_id, data.status, data.paid_date)
    return _ok({"invoice": await _invoice_out(db, inv)})


@app.delete("/api/invoices/{invoice_id}")
async def invoices_delete(invoice_id: int, db: AsyncSession = Depends(get_db)):
    await services.delete_invoice(db, invoice_id)
    return _ok()


# ════════════════════════════════════════════════
# EXPORT
# ════════════════════════════════════════════════
@app.get("/api/export/csv")
async def export_csv(format: str = "mobile-de", ids: str | None = None, db: AsyncSession = Depends(get_db)):
    payload, filename = await services.export_vehicles(db, format, _parse_ids(ids), today())
    return _attachment(payload, "text/csv; charset=utf-8", filename)


@app.get("/api/export/pdf/contract/{contract_id}")
async def export_contract_pdf(contract_id: int, db: AsyncSession = Depends(get_db)):
    payload, filename = render(await services.load_contract_snapshot(db, contract_id))
    return _attachment(payload, "application/pdf", filename)


@app.get("/api/export/pdf/invoice/{invoice_id}")
async def export_invoice_pdf(invoice_id: int, db: AsyncSession = Depends(get_db)):
    payload, filename = render(await services.load_invoice_snapshot(db, invoice_id))
    return _attachment(payload, "application/pdf", filename)


# ════════════════════════════════════════════════
# DASHBOARD
# ════════════════════════════════════════════════
@app.get("/api/stats")
async def stats(db: AsyncSession = Depends(get_db)):
    return _ok({"stats": await services.dashboard_stats(db)})
