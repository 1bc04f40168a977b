"""
Declarative bases for the stock ledger schema.

Every table gets an integer surrogate ``id`` from ``Base``.  Documents that
move through a lifecycle (transfers, returns, corrections, serial units)
inherit ``TrackedBase`` as well, which adds ``created_at``/``updated_at``.

Quantities and costs are Decimals end to end: a bare ``Decimal`` annotation
maps to ``Numeric(38, 9)``; quantity columns narrow that to ``Numeric(20, 4)``.
Nothing here imports from models or services.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar

from sqlalchemy import BigInteger, DateTime, Integer, Numeric, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements a column declared exactly INTEGER PRIMARY KEY.
IdType = BigInteger().with_variant(Integer(), "sqlite")


def _timestamp_column(*, on_update: bool = False) -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now() if on_update else None,
        nullable=False,
    )


class Base(DeclarativeBase):
    """Root of the schema; supplies ``id`` and the column type defaults."""

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        int: BigInteger,
    }

    # Flushed rows always have id > 0, so a serial_number_id is resolvable.
    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)


class TrackedBase(Base):
    """Base for lifecycle documents; rows may be updated as their status moves."""

    __abstract__ = True

    created_at: Mapped[datetime] = _timestamp_column()
    updated_at: Mapped[datetime] = _timestamp_column(on_update=True)
