import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import aiohttp_cors
from aiohttp import web

from .auth import READ, WRITE, ApiKeyRegistry, Principal, TokenAuthenticator, bearer_token
from .config import ServerConfig
from .errors import AuthError, ConflictError, MalformedRequestError, SqlBucketError
from .image import ImageLifecycleManager
from .metrics import LoggingMetricsSink, MetricsSink, measure_query, track
from .schema import describe_tables, new_database_image
from .session import QuerySession
from .storage import ImageStore, LocalImageStore, validate_db_name


log = logging.getLogger(__name__)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except SqlBucketError as e:
        log.warning('%s %s failed (%d): %s', request.method, request.path, e.status, e.message)
        return web.json_response(e.to_dict(), status=e.status)
    except web.HTTPException:
        raise
    except Exception:
        log.exception('Unhandled error for %s %s', request.method, request.path)
        return web.json_response({'error': 'Internal server error'}, status=500)


def _parse_params(raw: Any) -> List[Any]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise MalformedRequestError('params must be an array')
    return raw


def _parse_sql(raw: Any) -> str:
    if not isinstance(raw, str) or not raw:
        raise MalformedRequestError('Missing SQL query')
    return raw


async def _read_json(request: web.Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedRequestError('Request body must be valid JSON') from e
    if not isinstance(data, dict):
        raise MalformedRequestError('Request body must be a JSON object')
    return data


class SQLBucketServer:
    def __init__(
        self,
        config: ServerConfig,
        store: Optional[ImageStore] = None,
        registry: Optional[ApiKeyRegistry] = None,
        metrics: Optional[MetricsSink] = None
    ):
        self._config = config
        self._store = store or LocalImageStore(config.storage_root)
        self._registry = registry
        self._metrics = metrics or LoggingMetricsSink()
        self._lifecycle = ImageLifecycleManager(config.work_dir, verify=config.verify_images)
        self._session = QuerySession(self._lifecycle, backslash_escapes=config.backslash_escapes)
        self._tokens = (
            TokenAuthenticator(config.jwt_secret, config.jwt_algorithms)
            if config.jwt_secret else None
        )
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._request_count = 0
        self._start_time: Optional[float] = None

    @property
    def app(self) -> web.Application:
        if self._app is None:
            raise RuntimeError('Server is not initialized')
        return self._app

    async def initialize(self) -> None:
        if self._registry is None:
            if self._config.api_keys_file:
                self._registry = await ApiKeyRegistry.load(self._config.api_keys_file)
            else:
                self._registry = ApiKeyRegistry()
        self._app = web.Application(middlewares=[error_middleware])
        self._setup_routes()
        self._setup_cors()

    def _setup_routes(self) -> None:
        self._app.router.add_post('/databases', self._handle_create_database)
        self._app.router.add_delete('/databases/{db_name}', self._handle_delete_database)
        self._app.router.add_get('/databases/{db_name}/tables', self._handle_tables)
        self._app.router.add_post('/databases/{db_name}/query', self._handle_query)
        self._app.router.add_post('/api/{slug}', self._handle_api_write)
        self._app.router.add_get('/api/{slug}', self._handle_api_read)
        self._app.router.add_get('/health', self._handle_health)

    def _setup_cors(self) -> None:
        options = aiohttp_cors.ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers=("authorization", "x-client-info", "apikey", "content-type"),
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"]
        )
        cors = aiohttp_cors.setup(self._app, defaults={
            origin: options for origin in self._config.cors_origins
        })
        for route in list(self._app.router.routes()):
            cors.add(route)

    def _user(self, request: web.Request) -> Principal:
        token = bearer_token(request.headers.get('Authorization'))
        if self._tokens is None:
            raise AuthError('Token authentication is not configured')
        return self._tokens.authenticate(token)

    def _api_principal(self, request: web.Request, required: str) -> Principal:
        slug = request.match_info.get('slug', '')
        header = request.headers.get('Authorization')
        if not header:
            raise AuthError('Both database slug and bearer token are required')
        return self._registry.verify(slug, bearer_token(header), required)

    async def _execute(
        self,
        owner_id: str,
        db_name: str,
        sql: str,
        params: List[Any],
        read_only: bool = False
    ) -> Dict[str, Any]:
        attempt = 0
        while True:
            stored = await self._store.fetch(owner_id, db_name)
            outcome = await self._session.run(stored.data, sql, params)
            if read_only and outcome.should_persist:
                raise AuthError('API key lacks write permission')

            stored_size = 0
            if outcome.should_persist:
                try:
                    await self._store.store(owner_id, db_name, outcome.output_image, if_match=stored.etag)
                except ConflictError:
                    if attempt >= self._config.max_conflict_retries:
                        raise
                    attempt += 1
                    log.warning('Concurrent write to %s/%s, retrying (%d)', owner_id, db_name, attempt)
                    continue
                stored_size = len(outcome.output_image)

            payload = outcome.to_response()
            await track(
                self._metrics, owner_id,
                measure_query(sql, payload, len(stored.data), stored_size)
            )
            return payload

    async def _handle_create_database(self, request: web.Request) -> web.Response:
        self._request_count += 1
        principal = self._user(request)
        data = await _read_json(request)
        name = data.get('name')
        if not name:
            raise MalformedRequestError('Name is required')
        name = validate_db_name(name)

        image = await new_database_image(self._session)
        await self._store.store(principal.user_id, name, image, create_only=True)
        log.info('Created database %s/%s', principal.user_id, name)
        return web.json_response({
            'name': name,
            'owner_id': principal.user_id,
            'storage_size_bytes': len(image)
        }, status=201)

    async def _handle_delete_database(self, request: web.Request) -> web.Response:
        self._request_count += 1
        principal = self._user(request)
        name = validate_db_name(request.match_info['db_name'])
        await self._store.delete(principal.user_id, name)
        log.info('Deleted database %s/%s', principal.user_id, name)
        return web.json_response({'deleted': True})

    async def _handle_tables(self, request: web.Request) -> web.Response:
        self._request_count += 1
        principal = self._user(request)
        name = validate_db_name(request.match_info['db_name'])
        stored = await self._store.fetch(principal.user_id, name)
        tables = await describe_tables(self._lifecycle, stored.data)
        return web.json_response({'data': tables})

    async def _handle_query(self, request: web.Request) -> web.Response:
        self._request_count += 1
        principal = self._user(request)
        name = validate_db_name(request.match_info['db_name'])
        data = await _read_json(request)
        sql, params = _parse_sql(data.get('sql')), _parse_params(data.get('params'))
        payload = await self._execute(principal.user_id, name, sql, params)
        return web.json_response(payload)

    async def _handle_api_write(self, request: web.Request) -> web.Response:
        self._request_count += 1
        principal = self._api_principal(request, WRITE)
        data = await _read_json(request)
        sql, params = _parse_sql(data.get('sql')), _parse_params(data.get('params'))
        payload = await self._execute(principal.user_id, principal.db_name, sql, params)
        return web.json_response(payload)

    async def _handle_api_read(self, request: web.Request) -> web.Response:
        self._request_count += 1
        principal = self._api_principal(request, READ)
        sql, params = self._query_string_args(request)
        payload = await self._execute(principal.user_id, principal.db_name, sql, params, read_only=True)
        return web.json_response(payload)

    def _query_string_args(self, request: web.Request) -> Tuple[str, List[Any]]:
        sql = _parse_sql(request.query.get('sql'))
        raw_params = request.query.get('params')
        if raw_params is None:
            return sql, []
        try:
            return sql, _parse_params(json.loads(raw_params))
        except json.JSONDecodeError as e:
            raise MalformedRequestError('params must be a JSON array') from e

    async def _handle_health(self, request: web.Request) -> web.Response:
        uptime = time.monotonic() - self._start_time if self._start_time else 0
        return web.json_response({
            'status': 'healthy',
            'uptime': uptime,
            'request_count': self._request_count
        })

    async def start(self) -> None:
        self._start_time = time.monotonic()
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        log.info('Listening on http://%s:%d', self._config.host, self._config.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()


async def create_server(config: ServerConfig, **kwargs) -> SQLBucketServer:
    server = SQLBucketServer(config, **kwargs)
    await server.initialize()
    return server


async def create_app(config: ServerConfig, **kwargs) -> web.Application:
    server = await create_server(config, **kwargs)
    return server.app
