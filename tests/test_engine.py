import sqlite3

import pytest

from sqlbucket.classifier import classify_script
from sqlbucket.engine import EngineState, ExecutionEngine
from sqlbucket.errors import StatementExecutionError


async def _run(handle, script, params=()):
    engine = ExecutionEngine(handle, params=params)
    outcome = await engine.execute(classify_script(script))
    return engine, outcome


async def _count(handle, sql):
    async with handle.connection.execute(sql) as cursor:
        row = await cursor.fetchone()
    return row[0]


async def test_mutation_counting_and_last_insert_id(lifecycle):
    async with lifecycle.open(b'') as handle:
        engine, outcome = await _run(
            handle,
            "CREATE TABLE t (id);"
            "INSERT INTO t VALUES (1); INSERT INTO t VALUES (2); DELETE FROM t WHERE id=1;"
        )
    assert engine.state is EngineState.COMPLETED
    assert outcome.rows_affected == 3
    assert outcome.last_insert_id == 2
    assert outcome.schema_changed
    assert outcome.statements_executed == 4
    assert outcome.results == []


async def test_last_insert_id_stays_null_without_inserts(lifecycle, table_image):
    async with lifecycle.open(table_image) as handle:
        _, outcome = await _run(handle, "UPDATE t SET name = 'z'; DELETE FROM t WHERE id = 1;")
    assert outcome.rows_affected == 3
    assert outcome.last_insert_id is None
    assert not outcome.schema_changed


async def test_query_rows_are_column_mappings(lifecycle, table_image):
    async with lifecycle.open(table_image) as handle:
        _, outcome = await _run(handle, "SELECT id, name FROM t ORDER BY id; SELECT count(*) AS n FROM t;")
    assert [r.query for r in outcome.results] == [
        "SELECT id, name FROM t ORDER BY id;",
        "SELECT count(*) AS n FROM t;",
    ]
    assert outcome.results[0].rows == [{'id': 1, 'name': 'a'}, {'id': 2, 'name': 'b'}]
    assert outcome.results[1].rows == [{'n': 2}]
    assert outcome.rows_affected == 0


async def test_native_value_types(lifecycle):
    async with lifecycle.open(b'') as handle:
        _, outcome = await _run(handle, "SELECT x'0102' AS b, 1.5 AS r, NULL AS n, 'x' AS s, 7 AS i;")
    assert outcome.results[0].rows == [{'b': b'\x01\x02', 'r': 1.5, 'n': None, 's': 'x', 'i': 7}]


async def test_params_bind_only_to_statements_with_placeholders(lifecycle, table_image):
    async with lifecycle.open(table_image) as handle:
        _, outcome = await _run(
            handle,
            "INSERT INTO t (id, name) VALUES (?, ?); SELECT name FROM t WHERE id = 5;",
            params=[5, 'e']
        )
    assert outcome.rows_affected == 1
    assert outcome.last_insert_id == 5
    assert outcome.results[0].rows == [{'name': 'e'}]


async def test_params_on_select(lifecycle, table_image):
    async with lifecycle.open(table_image) as handle:
        _, outcome = await _run(handle, "SELECT name FROM t WHERE id = ?", params=[2])
    assert outcome.results[0].rows == [{'name': 'b'}]


async def test_create_table_if_not_exists_twice(lifecycle):
    async with lifecycle.open(b'') as handle:
        for _ in range(2):
            _, outcome = await _run(handle, "CREATE TABLE IF NOT EXISTS t (id INTEGER);")
            assert outcome.schema_changed
        assert await _count(handle, "SELECT count(*) FROM sqlite_master WHERE type='table' AND name='t'") == 1


async def test_create_if_not_exists_matches_existing_name_case_insensitively(lifecycle):
    async with lifecycle.open(b'') as handle:
        await _run(handle, "CREATE TABLE Items (id INTEGER);")
        await _run(handle, "create table if not exists items (id INTEGER, extra TEXT);")
        assert await _count(handle, "SELECT count(*) FROM sqlite_master WHERE type='table'") == 1


async def test_create_if_not_exists_unparsed_shape_runs_directly(lifecycle):
    async with lifecycle.open(b'') as handle:
        await _run(handle, "CREATE TABLE IF NOT EXISTS t_copy AS SELECT 1 AS x;")
        await _run(handle, "CREATE TABLE IF NOT EXISTS t_copy AS SELECT 1 AS x;")
        assert await _count(handle, "SELECT count(*) FROM t_copy") == 1


async def test_alter_and_drop(lifecycle, table_image):
    async with lifecycle.open(table_image) as handle:
        _, outcome = await _run(handle, "ALTER TABLE t ADD COLUMN c TEXT; CREATE TABLE u (a); DROP TABLE u;")
        assert outcome.schema_changed
        assert outcome.rows_affected == 0
        assert await _count(handle, "SELECT count(*) FROM pragma_table_info('t') WHERE name = 'c'") == 1


async def test_failure_aborts_remaining_statements(lifecycle, table_image):
    async with lifecycle.open(table_image) as handle:
        engine = ExecutionEngine(handle)
        with pytest.raises(StatementExecutionError) as info:
            await engine.execute(classify_script(
                "INSERT INTO nonexistent_table VALUES (1); INSERT INTO t VALUES (3, 'c');"
            ))
        assert engine.state is EngineState.FAILED
        assert info.value.statement == "INSERT INTO nonexistent_table VALUES (1);"
        assert 'nonexistent_table' in str(info.value)
        assert await _count(handle, "SELECT count(*) FROM t") == 2


async def test_constraint_violation_is_statement_error(lifecycle, table_image):
    async with lifecycle.open(table_image) as handle:
        with pytest.raises(StatementExecutionError) as info:
            await _run(handle, "INSERT INTO t (id, name) VALUES (1, 'dup');")
    assert info.value.status == 400


async def test_wrong_parameter_count_is_statement_error(lifecycle, table_image):
    async with lifecycle.open(table_image) as handle:
        with pytest.raises(StatementExecutionError):
            await _run(handle, "INSERT INTO t (id, name) VALUES (?, ?);", params=[9])


async def test_engine_runs_once(lifecycle):
    async with lifecycle.open(b'') as handle:
        engine = ExecutionEngine(handle)
        await engine.execute([])
        assert engine.state is EngineState.COMPLETED
        with pytest.raises(RuntimeError):
            await engine.execute([])


async def test_insert_of_rowid_zero_is_reported(lifecycle, table_image):
    async with lifecycle.open(table_image) as handle:
        _, outcome = await _run(handle, "INSERT INTO t (id, name) VALUES (0, 'zero');")
    assert outcome.rows_affected == 1
    assert outcome.last_insert_id == 0


async def test_ignored_insert_has_no_last_insert_id(lifecycle, table_image):
    async with lifecycle.open(table_image) as handle:
        _, outcome = await _run(handle, "INSERT OR IGNORE INTO t (id, name) VALUES (1, 'dup');")
    assert outcome.rows_affected == 0
    assert outcome.last_insert_id is None


async def test_schema_qualified_create(lifecycle):
    async with lifecycle.open(b'') as handle:
        engine, _ = await _run(
            handle,
            "CREATE TABLE main.u (id INTEGER);"
            "CREATE TABLE IF NOT EXISTS main.u (id INTEGER);"
            "CREATE TABLE IF NOT EXISTS temp.scratch (a);"
            "CREATE TABLE IF NOT EXISTS temp.scratch (a);"
            "INSERT INTO u VALUES (1);"
        )
        assert engine.state is EngineState.COMPLETED
        assert await _count(handle, "SELECT count(*) FROM u") == 1
        assert await _count(handle, "SELECT count(*) FROM temp.sqlite_master WHERE name = 'scratch'") == 1


@pytest.fixture
def outside_db(tmp_path):
    path = tmp_path / 'outside.db'
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE secrets (s TEXT)")
    conn.execute("INSERT INTO secrets VALUES ('top secret')")
    conn.commit()
    conn.close()
    return path


@pytest.mark.parametrize('script', [
    "ATTACH DATABASE '{path}' AS v; SELECT s FROM v.secrets;",
    "attach '{path}' as v;",
    "/* lead */ ATTACH /* mid */ '{path}' AS v;",
    "DETACH DATABASE temp;",
])
async def test_attach_and_detach_are_refused(lifecycle, outside_db, script):
    async with lifecycle.open(b'') as handle:
        engine = ExecutionEngine(handle)
        with pytest.raises(StatementExecutionError) as info:
            await engine.execute(classify_script(script.format(path=outside_db)))
        assert engine.state is EngineState.FAILED
        assert 'not permitted' in str(info.value)
        assert await _count(handle, "SELECT count(*) FROM pragma_database_list WHERE name = 'v'") == 0


async def test_vacuum_into_is_refused(lifecycle, tmp_path):
    target = tmp_path / 'copy.db'
    async with lifecycle.open(b'') as handle:
        with pytest.raises(StatementExecutionError):
            await _run(handle, f"VACUUM /* x */ INTO '{target}';")
        _, outcome = await _run(handle, "VACUUM;")
    assert not target.exists()
    assert outcome.statements_executed == 1


async def test_connection_cannot_attach_files(lifecycle, outside_db):
    async with lifecycle.open(b'') as handle:
        with pytest.raises(sqlite3.DatabaseError):
            await handle.connection.execute(f"ATTACH DATABASE '{outside_db}' AS v")
