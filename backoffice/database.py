import logging
import secrets
import ssl as _ssl_mod
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import DATABASE_URL
from .errors import Unavailable

logger = logging.getLogger("database")

# Errors that mean "the store is unreachable or busy", not "your data is wrong".
STORE_ERRORS = (OperationalError, InterfaceError)
SSL_QUERY_KEYS = ("sslmode", "sslrootcert", "sslcert", "sslkey")


def normalize_url(url: str) -> str:
    """Async driver URL with libpq-only SSL query args removed (asyncpg rejects them)."""
    u = make_url(url.strip())
    if u.drivername in ("postgres", "postgresql"):
        u = u.set(drivername="postgresql+asyncpg")
    u = u.difference_update_query(SSL_QUERY_KEYS)
    return u.render_as_string(hide_password=False)


def _pg_ssl_ctx() -> _ssl_mod.SSLContext:
    # Pooled Postgres endpoints terminate TLS with a self-signed chain.
    ctx = _ssl_mod.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = _ssl_mod.CERT_NONE
    return ctx


def make_engine(url: str) -> AsyncEngine:
    db_url = normalize_url(url)
    if "asyncpg" in db_url:
        return create_async_engine(
            db_url, echo=False, future=True,
            connect_args={
                "ssl": _pg_ssl_ctx(),
                "statement_cache_size": 0,
                "prepared_statement_cache_size": 0,
                "prepared_statement_name_func": lambda: f"__asyncpg_{secrets.token_hex(8)}__",
            },
            pool_size=2,
            max_overflow=3,
            pool_recycle=120,
            pool_pre_ping=True,
        )
    # SQLite: wait up to 15s on a locked database before giving up.
    return create_async_engine(db_url, echo=False, future=True, connect_args={"timeout": 15})


engine = make_engine(DATABASE_URL)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_db():
    async with SessionLocal() as session:
        yield session


@asynccontextmanager
async def transaction(db: AsyncSession):
    """Run a block as one atomic unit. Commits on success, rolls back on any
    error; store outages surface as Unavailable instead of being retried."""
    try:
        yield db
        await db.commit()
    except STORE_ERRORS as e:
        await db.rollback()
        logger.error(f"Entity store unavailable: {e}")
        raise Unavailable("Entity store unavailable") from e
    except Exception:
        await db.rollback()
        raise
