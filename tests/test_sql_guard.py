import pytest

from persistence.audit import AUDIT_INSERT_SQL, audit_trail_sql
from persistence.errors import UnsafeStatementError
from persistence.sql_guard import SqlStatementGuard


@pytest.fixture
def guard():
    return SqlStatementGuard("tenant_id")


def test_scoped_update_ok(guard):
    guard.validate(
        "UPDATE patients SET notes = $1, version = version + 1 "
        "WHERE id = $2 AND tenant_id = $3 AND version = $4 RETURNING *"
    )


def test_insert_with_tenant_column_ok(guard):
    guard.validate("INSERT INTO patients (id, tenant_id, mrn) VALUES ($1, $2, $3) RETURNING *")


def test_store_generated_statements_pass(guard):
    guard.validate(AUDIT_INSERT_SQL)
    guard.validate(audit_trail_sql(True))
    guard.validate(audit_trail_sql(False))


def test_rejects_insert_without_tenant(guard):
    with pytest.raises(UnsafeStatementError, match="INSERT must include tenant_id"):
        guard.validate("INSERT INTO patients (id, mrn) VALUES ($1, $2)")


def test_rejects_update_without_where(guard):
    with pytest.raises(UnsafeStatementError, match="requires a WHERE"):
        guard.validate("UPDATE patients SET notes = $1")


def test_rejects_where_without_tenant(guard):
    with pytest.raises(UnsafeStatementError, match="must constrain tenant_id"):
        guard.validate("DELETE FROM patients WHERE id = $1")


def test_tenant_only_in_returning_does_not_count(guard):
    with pytest.raises(UnsafeStatementError):
        guard.validate("UPDATE patients SET notes = $1 WHERE id = $2 RETURNING tenant_id")


def test_rejects_or_in_mutation_where(guard):
    with pytest.raises(UnsafeStatementError, match="OR clauses"):
        guard.validate("UPDATE patients SET notes = $1 WHERE tenant_id = $2 OR 1 = 1")


def test_rejects_multiple_statements(guard):
    with pytest.raises(UnsafeStatementError, match="semicolon"):
        guard.validate("SELECT * FROM patients WHERE tenant_id = $1; DROP TABLE patients")


def test_semicolon_inside_string_is_not_a_separator(guard):
    guard.validate("SELECT * FROM patients WHERE notes = 'a; b' AND tenant_id = $1")


def test_rejects_cte(guard):
    with pytest.raises(UnsafeStatementError, match="CTE"):
        guard.validate("WITH x AS (SELECT 1) DELETE FROM patients WHERE tenant_id = $1")


@pytest.mark.parametrize("statement", ["TRUNCATE patients", "DROP TABLE patients", "ALTER TABLE patients ADD x int"])
def test_rejects_ddl(guard, statement):
    with pytest.raises(UnsafeStatementError, match="denied"):
        guard.validate(statement)


def test_comment_cannot_hide_tenant_requirement(guard):
    with pytest.raises(UnsafeStatementError):
        guard.validate("DELETE FROM patients WHERE id = $1 -- AND tenant_id = $2")


def test_rejects_empty_and_unterminated(guard):
    with pytest.raises(UnsafeStatementError, match="Empty"):
        guard.validate("   ")
    with pytest.raises(UnsafeStatementError, match="Unterminated"):
        guard.validate("SELECT * FROM patients WHERE notes = 'open")
