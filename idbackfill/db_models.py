from datetime import UTC, datetime

from sqlalchemy import BigInteger, Column, DateTime, Float, Integer, MetaData, String, Table, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class EnrichmentRun(Base):
    __tablename__ = "enrichment_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_key: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    trigger_source: Mapped[str] = mapped_column(String(32), default="manual")
    status: Mapped[str] = mapped_column(String(32), default="running")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    batch_size: Mapped[int] = mapped_column(Integer, default=0)
    concurrency: Mapped[int] = mapped_column(Integer, default=0)
    candidates: Mapped[int] = mapped_column(Integer, default=0)
    resolved: Mapped[int] = mapped_column(Integer, default=0)
    not_found: Mapped[int] = mapped_column(Integer, default=0)
    lookup_failed: Mapped[int] = mapped_column(Integer, default=0)
    updated: Mapped[int] = mapped_column(Integer, default=0)
    update_failed: Mapped[int] = mapped_column(Integer, default=0)
    selection_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    fanout_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)


def target_table(
    metadata: MetaData,
    *,
    table_name: str,
    key_column: str,
    natural_key_column: str,
    identifier_column: str,
    schema: str | None = None,
) -> Table:
    # Describes an existing table; the backfill never issues DDL against it.
    return Table(
        table_name,
        metadata,
        Column(key_column, String(128), primary_key=True),
        Column(natural_key_column, String(128), nullable=True),
        Column(identifier_column, BigInteger, nullable=True),
        schema=schema,
    )
