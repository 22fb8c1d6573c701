import json
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import error_for_status


class SQLBucketClient:
    def __init__(self, base_url: str, token: Optional[str] = None):
        self._base_url = base_url.rstrip('/')
        self._token = token
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> 'SQLBucketClient':
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._session:
            await self._session.close()

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        bearer = token or self._token
        return {'Authorization': f'Bearer {bearer}'} if bearer else {}

    async def _request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        **kwargs
    ) -> Dict[str, Any]:
        if self._session is None:
            raise RuntimeError('Client session is not open')
        async with self._session.request(
            method,
            f'{self._base_url}{path}',
            headers=self._headers(token),
            **kwargs
        ) as response:
            data = await response.json()
            if response.status >= 400:
                raise error_for_status(response.status, data.get('error', response.reason))
            return data

    async def create_database(self, name: str) -> Dict[str, Any]:
        return await self._request('POST', '/databases', json={'name': name})

    async def delete_database(self, name: str) -> Dict[str, Any]:
        return await self._request('DELETE', f'/databases/{name}')

    async def tables(self, name: str) -> List[Dict[str, Any]]:
        data = await self._request('GET', f'/databases/{name}/tables')
        return data['data']

    async def query(
        self,
        name: str,
        sql: str,
        params: Optional[List[Any]] = None
    ) -> Dict[str, Any]:
        return await self._request(
            'POST',
            f'/databases/{name}/query',
            json={'sql': sql, 'params': params or []}
        )

    async def api_query(
        self,
        slug: str,
        api_key: str,
        sql: str,
        params: Optional[List[Any]] = None,
        read_only: bool = False
    ) -> Dict[str, Any]:
        if read_only:
            query = {'sql': sql}
            if params:
                query['params'] = json.dumps(params)
            return await self._request('GET', f'/api/{slug}', token=api_key, params=query)
        return await self._request(
            'POST',
            f'/api/{slug}',
            token=api_key,
            json={'sql': sql, 'params': params or []}
        )
