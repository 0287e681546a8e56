"""Sequential, human-readable identifiers.

Every number comes from a durable row in ``counters`` that is bumped with a
single ``UPDATE ... SET value = value + 1 RETURNING value``. The database
serialises concurrent bumps on the same row, so two callers can never see
the same value, and nothing ever derives a number from the entity tables.

Usage:
    # inside a transaction that also creates the numbered entity
    number = await next_value(db, "vehicle")

    # stand-alone, with retry on transient store errors
    allocator = Allocator(SessionLocal)
    number = await allocator.allocate("customer")
    invoice_no = await allocator.allocate_invoice_number(2026)   # "INV-2026-0001"
"""

from __future__ import annotations

import asyncio
import logging
import random

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import ALLOCATOR_BACKOFF_BASE, ALLOCATOR_MAX_ATTEMPTS
from .database import STORE_ERRORS
from .errors import Unavailable, ValidationError
from .models import Counter

logger = logging.getLogger("numbering")

NAMESPACES = frozenset({"vehicle", "customer", "contract", "invoice"})
# Namespaces that restart for every period (invoice numbers restart each year).
PERIODIC_NAMESPACES = frozenset({"invoice"})

_counters = Counter.__table__


def check_namespace(namespace: str, period: str = "") -> None:
    if namespace not in NAMESPACES:
        raise ValidationError(f"Unknown namespace '{namespace}'", {"namespace": "unknown namespace"})
    if namespace in PERIODIC_NAMESPACES and not period:
        raise ValidationError(f"Namespace '{namespace}' needs a period", {"period": "required"})
    if namespace not in PERIODIC_NAMESPACES and period:
        raise ValidationError(f"Namespace '{namespace}' is not periodic", {"period": "not allowed"})


def format_invoice_number(year: int, seq: int) -> str:
    return f"INV-{year}-{seq:04d}"


def format_contract_number(number: int) -> str:
    return f"V-{number:05d}"


def _increment(namespace: str, period: str):
    return (
        update(_counters)
        .where(_counters.c.namespace == namespace, _counters.c.period == period)
        .values(value=_counters.c.value + 1)
        .returning(_counters.c.value)
    )


def _seed(dialect: str, namespace: str, period: str):
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    return (
        insert(_counters)
        .values(namespace=namespace, period=period, value=0)
        .on_conflict_do_nothing(index_elements=["namespace", "period"])
    )


async def next_value(db: AsyncSession, namespace: str, period: str = "") -> int:
    """Bump the counter inside the caller's transaction and return the new value.

    If the caller rolls back, the bump rolls back with it: a failed entity
    creation never consumes a number.
    """
    check_namespace(namespace, period)
    value = (await db.execute(_increment(namespace, period))).scalar_one_or_none()
    if value is None:
        # First number in this namespace/period: create the row (a concurrent
        # creator may win the race, which is fine) and bump again.
        await db.execute(_seed(db.get_bind().dialect.name, namespace, period))
        value = (await db.execute(_increment(namespace, period))).scalar_one()
    return value


class Allocator:
    """Stand-alone allocation with bounded retry.

    Parameters
    ----------
    session_factory : async_sessionmaker producing sessions on the entity store
    max_attempts    : attempts before giving up with Unavailable
    backoff_base    : first retry delay in seconds, doubled per attempt (+ jitter)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_attempts: int = ALLOCATOR_MAX_ATTEMPTS,
        backoff_base: float = ALLOCATOR_BACKOFF_BASE,
    ):
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base

    async def allocate(self, namespace: str, period: str = "") -> int:
        check_namespace(namespace, period)
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.session_factory() as db:
                    value = await next_value(db, namespace, period)
                    await db.commit()
                    return value
            except STORE_ERRORS as e:
                if attempt == self.max_attempts:
                    logger.error(f"Allocation in '{namespace}/{period}' failed after {attempt} attempts: {e}")
                    raise Unavailable(f"Could not allocate a number in '{namespace}'") from e
                delay = self.backoff_base * (2 ** (attempt - 1)) * (1 + random.random())
                logger.warning(f"Allocation in '{namespace}/{period}' attempt {attempt} failed ({e}); retrying in {delay:.3f}s")
                await asyncio.sleep(delay)
        raise Unavailable(f"Could not allocate a number in '{namespace}'")

    async def allocate_invoice_number(self, year: int) -> str:
        return format_invoice_number(year, await self.allocate("invoice", str(year)))
