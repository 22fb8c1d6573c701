"""
Load/export boundary between database images and live SQLite handles.

A handle is a private scratch copy of the image inside the work directory,
opened in autocommit mode and unable to attach other files. Exporting
folds any write-ahead log back into that file and reads it, so the exported
bytes are always a complete database file.
"""
import logging
import sqlite3
import tempfile
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional, Tuple, TYPE_CHECKING

import aiofiles
import aiofiles.os
import aiosqlite

from .errors import DataCorruptionError

if TYPE_CHECKING:
    from .engine import EngineOutcome


log = logging.getLogger(__name__)

SQLITE_HEADER = b'SQLite format 3\x00'
_SIDECAR_SUFFIXES = ('', '-journal', '-wal', '-shm')


def _authorize(action: int, arg1, arg2, db_name, source) -> int:
    # Handles must never reach files outside their own scratch copy. An empty
    # filename is the private temporary database VACUUM attaches.
    if action == sqlite3.SQLITE_ATTACH and arg1:
        return sqlite3.SQLITE_DENY
    if action == sqlite3.SQLITE_FUNCTION and (arg2 or '').lower() == 'load_extension':
        return sqlite3.SQLITE_DENY
    return sqlite3.SQLITE_OK


class DatabaseHandle:
    __slots__ = ('_path', '_conn', '_id', '_closed')

    def __init__(self, path: Path, conn: aiosqlite.Connection, handle_id: str):
        self._path = path
        self._conn = conn
        self._id = handle_id
        self._closed = False

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._closed:
            raise RuntimeError(f'Database handle {self._id} is closed')
        return self._conn

    @property
    def path(self) -> Path:
        return self._path

    @property
    def handle_id(self) -> str:
        return self._id

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._conn.close()
        finally:
            for suffix in _SIDECAR_SUFFIXES:
                try:
                    await aiofiles.os.remove(f'{self._path}{suffix}')
                except FileNotFoundError:
                    pass


class ImageLifecycleManager:
    def __init__(self, work_dir: Optional[str] = None, verify: bool = True):
        self._work_dir = Path(work_dir or tempfile.gettempdir())
        self._verify = verify

    async def load(self, image: bytes) -> DatabaseHandle:
        if image and not image.startswith(SQLITE_HEADER):
            raise DataCorruptionError('Database image is not a valid SQLite database file')

        handle_id = uuid.uuid4().hex
        await aiofiles.os.makedirs(self._work_dir, exist_ok=True)
        path = self._work_dir / f'{handle_id}.db'
        async with aiofiles.open(path, 'wb') as f:
            await f.write(image)

        conn = await aiosqlite.connect(str(path), isolation_level=None)
        handle = DatabaseHandle(path, conn, handle_id)
        try:
            await self._prepare(conn)
            await conn.set_authorizer(_authorize)
        except aiosqlite.DatabaseError as e:
            await handle.close()
            raise DataCorruptionError(f'Database image is corrupt: {e}') from e
        except DataCorruptionError:
            await handle.close()
            raise

        log.debug('Loaded %d byte image into handle %s', len(image), handle_id)
        return handle

    async def _prepare(self, conn: aiosqlite.Connection) -> None:
        if self._verify:
            async with conn.execute('PRAGMA quick_check') as cursor:
                row = await cursor.fetchone()
            if row is None or row[0] != 'ok':
                detail = row[0] if row else 'no result'
                raise DataCorruptionError(f'Database image failed integrity check: {detail}')
        else:
            async with conn.execute('SELECT count(*) FROM sqlite_master') as cursor:
                await cursor.fetchone()

        await self._leave_wal(conn)

    async def _leave_wal(self, conn: aiosqlite.Connection) -> None:
        async with conn.execute('PRAGMA journal_mode') as cursor:
            row = await cursor.fetchone()
        if not row or str(row[0]).lower() != 'wal':
            return
        for pragma in ('PRAGMA wal_checkpoint(TRUNCATE)', 'PRAGMA journal_mode=DELETE'):
            async with conn.execute(pragma) as cursor:
                await cursor.fetchall()

    async def export(self, handle: DatabaseHandle) -> bytes:
        conn = handle.connection
        if conn.in_transaction:
            await conn.commit()
        await self._leave_wal(conn)
        async with aiofiles.open(handle.path, 'rb') as f:
            return await f.read()

    async def export_and_decide(
        self,
        handle: DatabaseHandle,
        outcome: 'EngineOutcome'
    ) -> Tuple[bytes, bool]:
        should_persist = outcome.rows_affected > 0 or outcome.schema_changed
        data = await self.export(handle)
        return data, should_persist

    async def release(self, handle: DatabaseHandle) -> None:
        await handle.close()

    @asynccontextmanager
    async def open(self, image: bytes) -> AsyncGenerator[DatabaseHandle, None]:
        handle = await self.load(image)
        try:
            yield handle
        finally:
            await self.release(handle)
