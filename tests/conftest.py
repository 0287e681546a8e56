"""Shared test fixtures: a fresh file-backed SQLite store per test plus entity factories."""

from __future__ import annotations

from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from backoffice import services
from backoffice.database import make_engine
from backoffice.enums import ContractStatus, ContractType
from backoffice.models import Base
from backoffice.schemas import ContractIn, CustomerIn, ImageIn, VehicleIn


@pytest_asyncio.fixture()
async def engine(tmp_path):
    """File-backed so concurrent sessions get separate connections."""
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path}/backoffice.db")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db(session_factory):
    async with session_factory() as session:
        yield session


SAMPLE_VEHICLE = {
    "manufacturer": "BMW",
    "model": "320d",
    "variant": "Touring M Sport",
    "body_type": "ESTATE",
    "condition": "USED",
    "status": "ACTIVE",
    "vin": "WBA8E1C50JA123456",
    "hsn": "0005",
    "tsn": "BLH",
    "first_registration": date(2019, 3, 1),
    "mileage": 84500,
    "previous_owners": 1,
    "fuel_type": "DIESEL",
    "transmission": "AUTOMATIC",
    "power_kw": 140,
    "power_ps": 190,
    "displacement": 1995,
    "drive_type": "REAR",
    "exterior_color": "Mineralgrau",
    "interior_color": "Schwarz",
    "doors": 5,
    "seats": 5,
    "features": ["Navigationssystem", "Sitzheizung", "LED-Scheinwerfer"],
    "purchase_price": 19000.0,
    "selling_price": 24990.0,
    "vat_type": "STANDARD",
    "description": "Scheckheftgepflegt.\nNichtraucherfahrzeug.",
    "export_mobile_de": True,
    "export_autoscout": True,
}


@pytest.fixture()
def new_vehicle(db):
    async def _make(images: int = 0, **overrides):
        data = {**SAMPLE_VEHICLE, **overrides}
        data["images"] = [ImageIn(url=f"https://cdn.example.com/v/{i}.jpg", position=i) for i in range(images)]
        return await services.create_vehicle(db, VehicleIn(**data))
    return _make


@pytest.fixture()
def new_customer(db):
    async def _make(**overrides):
        data = {"first_name": "Anna", "last_name": "Schmidt", "street": "Lindenstr. 7",
                "zip_code": "28195", "city": "Bremen", "email": "anna@example.de", **overrides}
        return await services.create_customer(db, CustomerIn(**data))
    return _make


def contract_in(vehicle, customer, *, type=ContractType.PURCHASE, status=ContractStatus.ACTIVE, **overrides) -> ContractIn:
    data = {
        "type": type, "status": status,
        "customer_id": customer.id, "vehicle_id": vehicle.id,
        "price_net": 21000.0, "vat": 3990.0, "price_gross": 24990.0,
        "contract_date": date(2026, 5, 4),
        **overrides,
    }
    return ContractIn(**data)


@pytest.fixture()
def new_contract(db):
    async def _make(vehicle, customer, **kw):
        return await services.create_contract(db, contract_in(vehicle, customer, **kw))
    return _make


@pytest.fixture()
def contract_data():
    return contract_in
