import asyncio
import hashlib
import logging
import re
import uuid
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol

import aiofiles
import aiofiles.os

from .errors import ConflictError, MalformedRequestError, NotFoundError, PersistenceError


log = logging.getLogger(__name__)

_DB_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,64}$')
_OWNER_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,128}$')


def validate_db_name(db_name: str) -> str:
    if not isinstance(db_name, str) or not _DB_NAME_PATTERN.match(db_name):
        raise MalformedRequestError(f'Invalid database name: {db_name!r}')
    return db_name


def image_key(owner_id: str, db_name: str) -> str:
    if not isinstance(owner_id, str) or not _OWNER_PATTERN.match(owner_id):
        raise MalformedRequestError(f'Invalid owner id: {owner_id!r}')
    return f'{owner_id}/{validate_db_name(db_name)}.db'


def compute_etag(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class StoredImage:
    data: bytes
    etag: str


class ImageStore(Protocol):
    async def fetch(self, owner_id: str, db_name: str) -> StoredImage: ...

    async def store(
        self,
        owner_id: str,
        db_name: str,
        data: bytes,
        if_match: Optional[str] = None,
        create_only: bool = False
    ) -> str: ...

    async def delete(self, owner_id: str, db_name: str) -> None: ...

    async def exists(self, owner_id: str, db_name: str) -> bool: ...


class LocalImageStore:
    """
    Image store on the local filesystem, laid out as {owner_id}/{db_name}.db.

    Writes go to a temporary sibling that then replaces the target, so a
    reader never sees a partially written image. Passing if_match makes a
    store conditional on the current etag.
    """

    def __init__(self, root: str):
        self._root = Path(root)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _path(self, owner_id: str, db_name: str) -> Path:
        return self._root / image_key(owner_id, db_name)

    async def _read(self, path: Path) -> Optional[bytes]:
        try:
            async with aiofiles.open(path, 'rb') as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def fetch(self, owner_id: str, db_name: str) -> StoredImage:
        data = await self._read(self._path(owner_id, db_name))
        if data is None:
            raise NotFoundError(f'Database {db_name} not found')
        return StoredImage(data=data, etag=compute_etag(data))

    async def store(
        self,
        owner_id: str,
        db_name: str,
        data: bytes,
        if_match: Optional[str] = None,
        create_only: bool = False
    ) -> str:
        path = self._path(owner_id, db_name)
        key = str(path)
        async with self._locks[key]:
            if if_match is not None or create_only:
                current = await self._read(path)
                if create_only and current is not None:
                    raise ConflictError(f'Database {db_name} already exists')
                if if_match is not None and (current is None or compute_etag(current) != if_match):
                    raise ConflictError(f'Database {db_name} was modified concurrently')

            tmp_path = path.with_name(f'.{path.name}.{uuid.uuid4().hex}.tmp')
            try:
                await aiofiles.os.makedirs(path.parent, exist_ok=True)
                async with aiofiles.open(tmp_path, 'wb') as f:
                    await f.write(data)
                await aiofiles.os.replace(tmp_path, path)
            except OSError as e:
                try:
                    await aiofiles.os.remove(tmp_path)
                except FileNotFoundError:
                    pass
                raise PersistenceError(f'Failed to save changes: {e}') from e

        log.debug('Stored %d bytes at %s', len(data), image_key(owner_id, db_name))
        return compute_etag(data)

    async def delete(self, owner_id: str, db_name: str) -> None:
        path = self._path(owner_id, db_name)
        async with self._locks[str(path)]:
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                raise NotFoundError(f'Database {db_name} not found') from None

    async def exists(self, owner_id: str, db_name: str) -> bool:
        return await aiofiles.os.path.exists(self._path(owner_id, db_name))
