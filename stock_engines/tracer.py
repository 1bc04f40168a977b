"""
``@traced_engine``: STOCK_ENGINE_TRACE records for the pure engines.

Each call to a decorated engine logs one DEBUG record naming the engine and
its version, a fingerprint of the selected inputs and the elapsed time.
Two calls with equal inputs produce the same fingerprint, whether the
arguments were passed by position or by keyword and whatever the scale of
the Decimals involved (``1.5`` and ``1.50`` hash alike).
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import time
from collections.abc import Callable, Mapping
from dataclasses import fields, is_dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from stock_kernel.logging_config import get_logger

_logger = get_logger("engines.tracer")

FINGERPRINT_LENGTH = 16


def _pairs(items) -> str:
    return "{" + ",".join(f"{key}:{_canonicalize(val)}" for key, val in items) + "}"


def _canonicalize(value: Any) -> str:
    match value:
        case None:
            return "null"
        case Enum():
            return str(value.value)
        case Decimal():
            return format(value.normalize(), "f")
        case str():
            return value
        case Mapping():
            return _pairs(sorted(value.items()))
        case list() | tuple():
            return "[" + ",".join(map(_canonicalize, value)) + "]"
    if is_dataclass(value) and not isinstance(value, type):
        return _pairs((f.name, getattr(value, f.name)) for f in fields(value))
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: dict[str, Any],
) -> str:
    """SHA-256 prefix over ``name=value`` for each named argument; absent ones hash as null."""
    canonical = "|".join(
        f"{name}={_canonicalize(arguments.get(name))}" for name in fingerprint_fields
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        def fingerprint(args: tuple, kwargs: dict) -> str:
            if not fingerprint_fields:
                return ""
            bound = signature.bind_partial(*args, **kwargs)
            return compute_input_fingerprint(fingerprint_fields, bound.arguments)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            input_fingerprint = fingerprint(args, kwargs)
            started = time.monotonic()
            result = func(*args, **kwargs)
            _logger.debug(
                "STOCK_ENGINE_TRACE",
                extra={
                    "trace_type": "STOCK_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": input_fingerprint,
                    "duration_ms": round((time.monotonic() - started) * 1000, 2),
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
