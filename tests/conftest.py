import pytest

from sqlbucket.image import ImageLifecycleManager
from sqlbucket.session import QuerySession


@pytest.fixture
def lifecycle(tmp_path):
    return ImageLifecycleManager(str(tmp_path / 'work'))


@pytest.fixture
def session(lifecycle):
    return QuerySession(lifecycle)


@pytest.fixture
async def table_image(session):
    outcome = await session.run(
        b'',
        "CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT);"
        "INSERT INTO t (id, name) VALUES (1, 'a');"
        "INSERT INTO t (id, name) VALUES (2, 'b');"
    )
    return outcome.output_image
