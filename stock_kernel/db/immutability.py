"""
Session listeners that refuse edits to append-only stock history.

Movements are the record every balance is reconciled against, so a
correction is always a new row and never an edit.  These listeners run in
the ORM flush and raise ``ImmutabilityViolationError`` before any SQL is
emitted.  On PostgreSQL the same rule is enforced a second time by the
triggers in ``db/triggers.py``, which also cover raw SQL.

    StockMovement, SerialMovement,
    TransferEvent, ReconciliationRun   no UPDATE, no DELETE
    StockBalance                       no DELETE (BalanceStore owns updates)
    SerialUnit                         no DELETE (SerialRegistry owns status)

Call ``register_immutability_listeners()`` once per process.  Tests that
tamper with history to exercise reconciliation go through raw SQL on a
connection, which the listeners never see.
"""

from sqlalchemy import event

from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": target.id,
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=target.id,
        reason=reason,
    )


def _check_append_only_update(mapper, connection, target):
    entity_type = type(target).__name__
    _block(entity_type, target, "UPDATE", f"{entity_type} rows are append-only")


def _check_append_only_delete(mapper, connection, target):
    entity_type = type(target).__name__
    _block(entity_type, target, "DELETE", f"{entity_type} rows cannot be deleted")


def _check_never_deleted(mapper, connection, target):
    entity_type = type(target).__name__
    _block(entity_type, target, "DELETE", f"{entity_type} rows are never deleted")


def _append_only_models():
    from stock_kernel.models.movement import StockMovement
    from stock_kernel.models.reconciliation import ReconciliationRun
    from stock_kernel.models.serial import SerialMovement
    from stock_kernel.models.transfer import TransferEvent

    return (StockMovement, SerialMovement, TransferEvent, ReconciliationRun)


def _never_deleted_models():
    from stock_kernel.models.balance import StockBalance
    from stock_kernel.models.serial import SerialUnit

    return (StockBalance, SerialUnit)


def register_immutability_listeners() -> None:
    """Install the flush listeners; calling twice is harmless."""
    for model in _append_only_models():
        if not event.contains(model, "before_update", _check_append_only_update):
            event.listen(model, "before_update", _check_append_only_update)
        if not event.contains(model, "before_delete", _check_append_only_delete):
            event.listen(model, "before_delete", _check_append_only_delete)
    for model in _never_deleted_models():
        if not event.contains(model, "before_delete", _check_never_deleted):
            event.listen(model, "before_delete", _check_never_deleted)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """Detach the flush listeners (tests only)."""
    for model in _append_only_models():
        _safe_remove_listener(model, "before_update", _check_append_only_update)
        _safe_remove_listener(model, "before_delete", _check_append_only_delete)
    for model in _never_deleted_models():
        _safe_remove_listener(model, "before_delete", _check_never_deleted)
