from typing import Any, Dict, List

from .image import ImageLifecycleManager
from .session import QuerySession


INITIAL_SCHEMA = """
CREATE TABLE _schema_version (
    version INTEGER PRIMARY KEY,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
INSERT INTO _schema_version (version) VALUES (1);
"""


async def new_database_image(session: QuerySession) -> bytes:
    outcome = await session.run(b'', INITIAL_SCHEMA)
    return outcome.output_image


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


async def describe_tables(lifecycle: ImageLifecycleManager, image: bytes) -> List[Dict[str, Any]]:
    tables = []
    async with lifecycle.open(image) as handle:
        conn = handle.connection
        async with conn.execute(
            "SELECT name, sql FROM sqlite_master "
            "WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ) as cursor:
            rows = await cursor.fetchall()

        for table_name, create_statement in rows:
            async with conn.execute(f'PRAGMA table_info({_quote_identifier(table_name)})') as cursor:
                columns = await cursor.fetchall()
            tables.append({
                'name': table_name,
                'createStatement': create_statement,
                'columns': [
                    {
                        'name': col[1],
                        'type': col[2],
                        'notNull': col[3] == 1,
                        'defaultValue': col[4],
                        'isPrimaryKey': col[5] >= 1
                    }
                    for col in columns
                ]
            })
    return tables
