"""Generic table access for the database_query and database_update nodes."""

import threading
from typing import Any, Dict, List, Optional
from fastapi.encoders import jsonable_encoder
from sqlalchemy import Engine, MetaData, Table, select, update
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from ..core.exceptions import DataStoreError
from ..core.logging import get_logger
from ..storage.database import get_database_engine

logger = get_logger(__name__)


class SqlDataStore:
    """Query and update arbitrary tables by column equality.

    Tables are reflected on first use and cached. Rows are returned as
    plain dicts with JSON-safe values so that they can be stored as node
    results.
    """

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine
        self._tables: Dict[str, Table] = {}
        self._lock = threading.Lock()

    @property
    def engine(self) -> Engine:
        return self._engine if self._engine is not None else get_database_engine()

    def query(self, table: str, filters: Optional[Dict[str, Any]] = None,
              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Select rows matching every filter.

        Args:
            table: Table name
            filters: Column -> value equality filters; None values are skipped
            limit: Maximum number of rows

        Returns:
            List of rows as dicts

        Raises:
            DataStoreError: If the table or a column does not exist, or the query fails
        """
        table_obj = self._get_table(table)
        statement = select(table_obj)
        for column, value in (filters or {}).items():
            if value is None:
                continue
            statement = statement.where(self._column(table_obj, column) == value)
        if limit:
            statement = statement.limit(limit)

        try:
            with self.engine.connect() as connection:
                rows = connection.execute(statement).mappings().all()
        except SQLAlchemyError as e:
            raise DataStoreError(f"Query on table '{table}' failed: {str(e)}", table=table)

        logger.debug(f"Query on '{table}' returned {len(rows)} rows")
        return [jsonable_encoder(dict(row)) for row in rows]

    def update(self, table: str, record_id: Any, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update the row whose ``id`` is ``record_id`` and return it.

        Raises:
            DataStoreError: If the table, a column or the row does not exist
        """
        table_obj = self._get_table(table)
        id_column = self._column(table_obj, "id")
        for column in values:
            self._column(table_obj, column)

        try:
            with self.engine.begin() as connection:
                if values:
                    connection.execute(update(table_obj).where(id_column == record_id).values(**values))
                row = connection.execute(select(table_obj).where(id_column == record_id)).mappings().first()
        except SQLAlchemyError as e:
            raise DataStoreError(f"Update on table '{table}' failed: {str(e)}", table=table)

        if row is None:
            raise DataStoreError(f"No row with id '{record_id}' in table '{table}'", table=table)

        logger.debug(f"Updated row {record_id} in '{table}'")
        return jsonable_encoder(dict(row))

    def _get_table(self, name: str) -> Table:
        with self._lock:
            if name in self._tables:
                return self._tables[name]
            try:
                table_obj = Table(name, MetaData(), autoload_with=self.engine)
            except NoSuchTableError:
                raise DataStoreError(f"Table '{name}' does not exist", table=name)
            except SQLAlchemyError as e:
                raise DataStoreError(f"Could not load table '{name}': {str(e)}", table=name)
            self._tables[name] = table_obj
            return table_obj

    @staticmethod
    def _column(table_obj: Table, column: str):
        if column not in table_obj.c:
            raise DataStoreError(
                f"Column '{column}' does not exist in table '{table_obj.name}'",
                table=table_obj.name
            )
        return table_obj.c[column]
