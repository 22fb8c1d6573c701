import hashlib
import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Optional

import aiofiles
import jwt

from .errors import AuthError
from .storage import validate_db_name


log = logging.getLogger(__name__)

READ = 'read'
WRITE = 'write'
_PERMISSION_RANK = {READ: 1, WRITE: 2}


@dataclass(frozen=True)
class Principal:
    user_id: str
    permission: str = WRITE
    db_name: Optional[str] = None

    def allows(self, required: str) -> bool:
        return _PERMISSION_RANK.get(self.permission, 0) >= _PERMISSION_RANK[required]


def bearer_token(header: Optional[str]) -> str:
    if not header:
        raise AuthError('No authorization header')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        raise AuthError('Authorization header must be a bearer token')
    return token.strip()


class TokenAuthenticator:
    def __init__(self, secret: str, algorithms: Iterable[str] = ('HS256',)):
        if not secret:
            raise ValueError('A JWT secret is required')
        self._secret = secret
        self._algorithms = list(algorithms)

    def authenticate(self, token: str) -> Principal:
        try:
            claims = jwt.decode(token, self._secret, algorithms=self._algorithms)
        except jwt.PyJWTError as e:
            log.warning('Rejected bearer token: %s', e)
            raise AuthError('Error getting user') from e
        subject = claims.get('sub')
        if not subject:
            raise AuthError('Token has no subject')
        return Principal(user_id=str(subject))

    def issue(self, user_id: str, expires_in: int = 3600) -> str:
        now = int(time.time())
        payload = {'sub': user_id, 'iat': now, 'exp': now + expires_in}
        return jwt.encode(payload, self._secret, algorithm=self._algorithms[0])


def hash_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode('utf-8')).hexdigest()


@dataclass
class DatabaseRoute:
    slug: str
    owner_id: str
    db_name: str
    active: bool = True


@dataclass
class ApiKeyRecord:
    key_hash: str
    slug: str
    permission: str
    active: bool = True


class ApiKeyRegistry:
    """
    Slug routing and API key verification for key-based database access.

    Only SHA-256 hashes of keys are kept; a plain key is returned once by
    issue() and never stored.
    """

    def __init__(self):
        self._routes: Dict[str, DatabaseRoute] = {}
        self._keys: Dict[str, ApiKeyRecord] = {}

    def register(self, slug: str, owner_id: str, db_name: str) -> DatabaseRoute:
        route = DatabaseRoute(slug=slug, owner_id=owner_id, db_name=validate_db_name(db_name))
        self._routes[slug] = route
        return route

    def issue(self, slug: str, permission: str = WRITE) -> str:
        if slug not in self._routes:
            raise KeyError(f'Unknown database slug: {slug}')
        if permission not in _PERMISSION_RANK:
            raise ValueError(f'Unknown permission: {permission}')
        api_key = secrets.token_urlsafe(32)
        record = ApiKeyRecord(key_hash=hash_key(api_key), slug=slug, permission=permission)
        self._keys[record.key_hash] = record
        return api_key

    def revoke(self, api_key: str) -> bool:
        record = self._keys.get(hash_key(api_key))
        if record is None:
            return False
        record.active = False
        return True

    def verify(self, slug: str, api_key: str, required: str) -> Principal:
        if not slug or not api_key:
            raise AuthError('Both database slug and bearer token are required')

        route = self._routes.get(slug)
        if route is None or not route.active:
            raise AuthError(f'Invalid database URL: {slug}')

        record = self._keys.get(hash_key(api_key))
        if record is None or not record.active:
            raise AuthError('Invalid API key')
        if record.slug != slug:
            raise AuthError('API key does not match database slug')

        principal = Principal(user_id=route.owner_id, permission=record.permission, db_name=route.db_name)
        if not principal.allows(required):
            raise AuthError(f'API key lacks {required} permission')
        return principal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'databases': [asdict(route) for route in self._routes.values()],
            'keys': [asdict(record) for record in self._keys.values()]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApiKeyRegistry':
        registry = cls()
        for item in data.get('databases', []):
            route = DatabaseRoute(**item)
            registry._routes[route.slug] = route
        for item in data.get('keys', []):
            record = ApiKeyRecord(**item)
            registry._keys[record.key_hash] = record
        return registry

    @classmethod
    async def load(cls, path: str) -> 'ApiKeyRegistry':
        async with aiofiles.open(path, 'r', encoding='utf-8') as f:
            data = json.loads(await f.read())
        return cls.from_dict(data)

    async def save(self, path: str) -> None:
        async with aiofiles.open(path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(self.to_dict(), indent=2))
