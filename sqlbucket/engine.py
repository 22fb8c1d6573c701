import logging
import re
import sqlite3
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import aiosqlite

from .classifier import Statement, StatementKind
from .errors import StatementExecutionError
from .image import DatabaseHandle
from .splitter import has_placeholders, strip_comments


log = logging.getLogger(__name__)

SqlValue = Union[None, int, float, str, bytes]
Row = Dict[str, SqlValue]

_CREATE_IF_NOT_EXISTS = re.compile(
    r'^create\s+table\s+if\s+not\s+exists\s+(?:(\w+)\.)?(\w+)\s*\((.*)\)\s*;?\s*$',
    re.I | re.S
)
_CREATE_TABLE_NAME = re.compile(
    r'^create\s+(?:temp(?:orary)?\s+)?table\s+(?:if\s+not\s+exists\s+)?(?:(\w+)\.)?(\w+)(?![\w.])',
    re.I
)
_INSERT_STATEMENT = re.compile(
    r'^(?:with\b.*?\b)?(?:insert|replace)\s+(?:or\s+\w+\s+)?into\b',
    re.I | re.S
)
_FORBIDDEN_STATEMENT = re.compile(r'^(?:attach|detach)\b|^vacuum\b.*\binto\b', re.I | re.S)
_DRIVER_ERRORS = (sqlite3.Error, sqlite3.Warning, ValueError)


class EngineState(Enum):
    IDLE = auto()
    RUNNING = auto()
    FAILED = auto()
    COMPLETED = auto()


@dataclass
class ExecutionResult:
    query: str
    rows: List[Row] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'query': self.query, 'results': self.rows}


@dataclass
class EngineOutcome:
    results: List[ExecutionResult] = field(default_factory=list)
    rows_affected: int = 0
    last_insert_id: Optional[int] = None
    schema_changed: bool = False
    statements_executed: int = 0


class ExecutionEngine:
    """
    Runs classified statements against one handle, strictly in order.

    An engine instance serves a single invocation. The first failing
    statement moves it to FAILED and nothing after it is executed.
    """

    def __init__(
        self,
        handle: DatabaseHandle,
        params: Sequence[Any] = (),
        fetch_size: int = 1000,
        backslash_escapes: bool = False
    ):
        self._handle = handle
        self._params = tuple(params)
        self._fetch_size = fetch_size
        self._backslash_escapes = backslash_escapes
        self._state = EngineState.IDLE

    @property
    def state(self) -> EngineState:
        return self._state

    async def execute(self, statements: Sequence[Statement]) -> EngineOutcome:
        if self._state is not EngineState.IDLE:
            raise RuntimeError(f'Engine already used (state={self._state.name})')

        outcome = EngineOutcome()
        if not statements:
            self._state = EngineState.COMPLETED
            return outcome

        self._state = EngineState.RUNNING
        conn = self._handle.connection

        for statement in statements:
            log.debug('Executing %s statement: %s', statement.kind.name, statement.text)
            try:
                self._check_allowed(statement)
                if statement.kind is StatementKind.QUERY:
                    outcome.results.append(await self._run_query(conn, statement))
                elif statement.kind is StatementKind.SCHEMA:
                    await self._run_schema(conn, statement)
                    outcome.schema_changed = True
                else:
                    changed, rowid = await self._run_mutation(conn, statement)
                    outcome.rows_affected += changed
                    if rowid is not None:
                        outcome.last_insert_id = rowid
            except StatementExecutionError:
                self._state = EngineState.FAILED
                raise
            except _DRIVER_ERRORS as e:
                self._state = EngineState.FAILED
                raise StatementExecutionError(statement.text, e) from e
            outcome.statements_executed += 1

        self._state = EngineState.COMPLETED
        return outcome

    def _bindings(self, text: str) -> Tuple[Any, ...]:
        if self._params and has_placeholders(text, self._backslash_escapes):
            return self._params
        return ()

    async def _run_query(self, conn: aiosqlite.Connection, statement: Statement) -> ExecutionResult:
        result = ExecutionResult(query=statement.text)
        async with conn.execute(statement.text, self._bindings(statement.text)) as cursor:
            columns = [desc[0] for desc in cursor.description] if cursor.description else []
            while True:
                batch = await cursor.fetchmany(self._fetch_size)
                if not batch:
                    break
                for row in batch:
                    result.rows.append(dict(zip(columns, row)))
        return result

    def _check_allowed(self, statement: Statement) -> None:
        # Scripts may only touch the image loaded into this handle.
        if _FORBIDDEN_STATEMENT.match(strip_comments(statement.text, self._backslash_escapes).strip()):
            raise StatementExecutionError(
                statement.text,
                'ATTACH, DETACH and VACUUM INTO are not permitted'
            )

    async def _run_schema(self, conn: aiosqlite.Connection, statement: Statement) -> None:
        text = statement.text
        match = _CREATE_IF_NOT_EXISTS.match(text)
        if match:
            schema, table_name, columns = match.groups()
            if not await self._table_exists(conn, schema, table_name):
                await self._exec(conn, f'CREATE TABLE {_qualified(schema, table_name)} ({columns})')
            else:
                log.debug('Table %s already exists, skipping create', table_name)
        else:
            await self._exec(conn, text, self._bindings(text))

        created = _CREATE_TABLE_NAME.match(text)
        if created:
            await self._verify_table(conn, text, *created.groups())

    async def _run_mutation(
        self,
        conn: aiosqlite.Connection,
        statement: Statement
    ) -> Tuple[int, Optional[int]]:
        async with conn.execute(statement.text, self._bindings(statement.text)) as cursor:
            await cursor.fetchall()
            changed = cursor.rowcount if cursor.rowcount > 0 else 0
            rowid = cursor.lastrowid

        if changed and rowid is not None and _INSERT_STATEMENT.match(statement.text.lstrip()):
            return changed, rowid
        return changed, None

    async def _exec(self, conn: aiosqlite.Connection, sql: str, params: Tuple[Any, ...] = ()) -> None:
        async with conn.execute(sql, params) as cursor:
            await cursor.fetchall()

    async def _table_exists(
        self,
        conn: aiosqlite.Connection,
        schema: Optional[str],
        table_name: str
    ) -> bool:
        async with conn.execute(
            f'SELECT name FROM "{schema or "main"}".sqlite_master '
            "WHERE type='table' AND lower(name) = lower(?)",
            (table_name,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def _verify_table(
        self,
        conn: aiosqlite.Connection,
        text: str,
        schema: Optional[str],
        table_name: str
    ) -> None:
        try:
            async with conn.execute(f'SELECT * FROM {_qualified(schema, table_name)} LIMIT 0') as cursor:
                await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StatementExecutionError(text, f'Failed to create table {table_name}: {e}') from e


def _qualified(schema: Optional[str], table_name: str) -> str:
    if schema:
        return f'"{schema}"."{table_name}"'
    return f'"{table_name}"'
