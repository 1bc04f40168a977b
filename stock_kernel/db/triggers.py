"""
Module: stock_kernel.db.triggers
Responsibility: Installing, removing and verifying PostgreSQL immutability
    triggers.  This is the database-level complement to the ORM-level
    listeners in db/immutability.py.
Architecture position: Kernel > DB.  May import from db/ only.  MUST NOT
    import from models/, services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - stock_movements, serial_movements, transfer_events: no UPDATE, no DELETE.
    - stock_balances, serial_units: no DELETE.

Failure modes:
    - PostgreSQL RAISE EXCEPTION on any violation (surfaced by SQLAlchemy as
      InternalError / ProgrammingError depending on the driver).
    - OperationalError on deadlock during installation (caller retries).

Audit relevance:
    Raw SQL, bulk statements and direct psql access bypass the ORM listeners.
    These triggers still reject them.
"""

from sqlalchemy import text
from sqlalchemy.engine import Engine

_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION stock_reject_modification() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'IMMUTABILITY_VIOLATION: % on % is not allowed (id=%)',
        TG_OP, TG_TABLE_NAME, OLD.id;
END;
$$ LANGUAGE plpgsql;
"""

# (trigger name, table, operation)
TRIGGER_SPECS: tuple[tuple[str, str, str], ...] = (
    ("trg_stock_movement_no_update", "stock_movements", "UPDATE"),
    ("trg_stock_movement_no_delete", "stock_movements", "DELETE"),
    ("trg_serial_movement_no_update", "serial_movements", "UPDATE"),
    ("trg_serial_movement_no_delete", "serial_movements", "DELETE"),
    ("trg_transfer_event_no_update", "transfer_events", "UPDATE"),
    ("trg_transfer_event_no_delete", "transfer_events", "DELETE"),
    ("trg_stock_balance_no_delete", "stock_balances", "DELETE"),
    ("trg_serial_unit_no_delete", "serial_units", "DELETE"),
)

ALL_TRIGGER_NAMES = [name for name, _, _ in TRIGGER_SPECS]


def _install_sql() -> str:
    parts = [_FUNCTION_SQL]
    for name, table, operation in TRIGGER_SPECS:
        parts.append(f"DROP TRIGGER IF EXISTS {name} ON {table};")
        parts.append(
            f"CREATE TRIGGER {name} BEFORE {operation} ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION stock_reject_modification();"
        )
    return "\n".join(parts)


def _drop_sql() -> str:
    parts = [
        f"DROP TRIGGER IF EXISTS {name} ON {table};"
        for name, table, _ in TRIGGER_SPECS
    ]
    parts.append("DROP FUNCTION IF EXISTS stock_reject_modification();")
    return "\n".join(parts)


def install_immutability_triggers(engine: Engine) -> None:
    """
    Install database-level immutability triggers.

    Preconditions: Tables must exist (call after create_all()).
        Engine must be connected to PostgreSQL.
    """
    with engine.connect() as conn:
        conn.execute(text(_install_sql()))
        conn.commit()


def uninstall_immutability_triggers(engine: Engine) -> None:
    """
    Remove database-level immutability triggers.

    Only for test teardown and migrations that must rewrite history.
    """
    with engine.connect() as conn:
        conn.execute(text(_drop_sql()))
        conn.commit()


def get_installed_triggers(engine: Engine) -> list[str]:
    """List the immutability triggers currently present in pg_trigger."""
    trigger_list = ", ".join(f"'{name}'" for name in ALL_TRIGGER_NAMES)
    check_sql = f"""
    SELECT tgname FROM pg_trigger
    WHERE tgname IN ({trigger_list})
    ORDER BY tgname;
    """
    with engine.connect() as conn:
        return [row[0] for row in conn.execute(text(check_sql))]


def triggers_installed(engine: Engine) -> bool:
    """True iff every trigger in ALL_TRIGGER_NAMES is installed."""
    return len(get_installed_triggers(engine)) == len(ALL_TRIGGER_NAMES)
