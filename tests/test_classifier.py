import pytest

from sqlbucket.classifier import StatementKind, classify, classify_script


@pytest.mark.parametrize('stmt, kind', [
    ("  select * from t", StatementKind.QUERY),
    ("SELECT 1;", StatementKind.QUERY),
    ("CREATE TABLE t (id INT)", StatementKind.SCHEMA),
    ("create index i on t(id)", StatementKind.SCHEMA),
    ("ALTER TABLE t ADD COLUMN c TEXT", StatementKind.SCHEMA),
    ("drop\ttable t", StatementKind.SCHEMA),
    ("insert into t values (1)", StatementKind.MUTATION),
    ("UPDATE t SET id = 2", StatementKind.MUTATION),
    ("DELETE FROM t", StatementKind.MUTATION),
    ("createtable t", StatementKind.MUTATION),
    ("PRAGMA user_version = 3", StatementKind.MUTATION),
])
def test_classify(stmt, kind):
    assert classify(stmt) is kind


def test_classify_script_keeps_original_text_and_order():
    statements = classify_script("Select 1; INSERT INTO t VALUES (1); Create Table x (a);")
    assert [s.text for s in statements] == [
        "Select 1;",
        "INSERT INTO t VALUES (1);",
        "Create Table x (a);",
    ]
    assert [s.kind for s in statements] == [
        StatementKind.QUERY,
        StatementKind.MUTATION,
        StatementKind.SCHEMA,
    ]
    assert statements[0].is_query
    assert statements[2].is_schema


def test_leading_comment_does_not_hide_select():
    statements = classify_script("-- list rows\nSELECT 1;")
    assert statements[0].kind is StatementKind.QUERY
