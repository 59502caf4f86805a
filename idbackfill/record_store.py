from abc import ABC, abstractmethod
import logging

from sqlalchemy import Engine, MetaData, Table, select, update
from sqlalchemy.exc import SQLAlchemyError

from idbackfill.config import Settings
from idbackfill.db_models import target_table
from idbackfill.errors import InvalidIdentifierError, SelectionError
from idbackfill.schemas import CandidateRecord, Updated, UpdateFailed, UpdateOutcome


logger = logging.getLogger(__name__)


def parse_identifier(identifier: str, prefix: str) -> int:
    text = str(identifier).strip()
    if prefix and text.startswith(prefix):
        text = text[len(prefix):]
    if not (text.isascii() and text.isdigit()):
        raise InvalidIdentifierError(f"cannot parse numeric part of identifier {identifier!r}")
    value = int(text)
    if value <= 0:
        raise InvalidIdentifierError(f"identifier {identifier!r} is not positive")
    return value


class RecordStore(ABC):
    @abstractmethod
    def fetch_candidates(self, limit: int) -> list[CandidateRecord]:
        """Rows still missing the identifier, at most ``limit`` of them.

        Raises SelectionError when the backend cannot be queried.
        """

    @abstractmethod
    def update(self, row_key: str, identifier: str) -> UpdateOutcome:
        """Write one identifier onto one row; never raises."""


class SqlRecordStore(RecordStore):
    def __init__(
        self,
        engine: Engine,
        table: Table,
        *,
        key_column: str,
        natural_key_column: str,
        identifier_column: str,
        identifier_prefix: str,
    ) -> None:
        self.engine = engine
        self.table = table
        self.key = table.c[key_column]
        self.natural_key = table.c[natural_key_column]
        self.identifier = table.c[identifier_column]
        self.identifier_prefix = identifier_prefix

    @classmethod
    def from_settings(cls, engine: Engine, settings: Settings) -> "SqlRecordStore":
        table = target_table(
            MetaData(),
            table_name=settings.table_name,
            schema=settings.table_schema,
            key_column=settings.key_column,
            natural_key_column=settings.natural_key_column,
            identifier_column=settings.identifier_column,
        )
        return cls(
            engine,
            table,
            key_column=settings.key_column,
            natural_key_column=settings.natural_key_column,
            identifier_column=settings.identifier_column,
            identifier_prefix=settings.identifier_prefix,
        )

    def fetch_candidates(self, limit: int) -> list[CandidateRecord]:
        stmt = (
            select(self.key, self.natural_key)
            .where(self.identifier.is_(None), self.natural_key.is_not(None))
            .limit(limit)
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise SelectionError(f"candidate selection failed: {exc}") from exc

        logger.info("candidates fetched", extra={"count": len(rows), "limit": limit, "table": self.table.fullname})
        return [CandidateRecord(row_key=str(row[0]), natural_key=str(row[1])) for row in rows]

    def update(self, row_key: str, identifier: str) -> UpdateOutcome:
        try:
            value = parse_identifier(identifier, self.identifier_prefix)
        except InvalidIdentifierError as exc:
            logger.error("identifier rejected", extra={"row_key": row_key, "identifier": identifier})
            return UpdateFailed(str(exc))

        stmt = update(self.table).where(self.key == row_key).values({self.identifier.name: value})
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("row update failed", extra={"row_key": row_key, "error": str(exc)})
            return UpdateFailed(f"write failed: {exc}")
        except Exception as exc:
            # Dialect plugins can surface auth or transport errors outside SQLAlchemy's hierarchy.
            logger.exception("row update failed outside the database driver", extra={"row_key": row_key})
            return UpdateFailed(f"write failed: {type(exc).__name__}: {exc}")

        # Some warehouse dialects report -1 for DML; only a definite zero is a miss.
        if result.rowcount == 0:
            logger.warning("row update matched nothing", extra={"row_key": row_key})
            return UpdateFailed(f"no row with key {row_key!r}")

        logger.debug("row updated", extra={"row_key": row_key, "identifier": value})
        return Updated()
