"""
Campus Delivery — database plumbing

The service talks to the store with textual SQL over an AsyncSession,
one explicit commit per command. Money columns are bound through a typed
Numeric so both asyncpg and aiosqlite receive a value they accept.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path

from sqlalchemy import Numeric, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

MONEY = Numeric(10, 2, asdecimal=True)
PERCENT = Numeric(5, 2, asdecimal=True)

CENT = Decimal("0.01")

# Column limits: NUMERIC(10, 2) and INTEGER.
MAX_MONEY = Decimal("99999999.99")
MAX_INT = 2_147_483_647


def create_engine(url: str, **kwargs) -> AsyncEngine:
    return create_async_engine(url, echo=False, **kwargs)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """Run schema.sql. Every statement is CREATE ... IF NOT EXISTS, so this is repeatable."""
    statements = [s.strip() for s in SCHEMA_PATH.read_text(encoding="utf-8").split(";")]
    async with engine.begin() as conn:
        for statement in statements:
            if not statement or all(
                line.strip().startswith("--") or not line.strip()
                for line in statement.splitlines()
            ):
                continue
            await conn.execute(text(statement))
    logger.info("schema ready (%d statements)", len(statements))


# ── Value helpers ────────────────────────────────


def money(value) -> Decimal:
    """Round a stored or computed amount to cents, half-up."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def iso(value) -> str | None:
    # PostgreSQL returns datetimes, SQLite returns the stored text.
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
