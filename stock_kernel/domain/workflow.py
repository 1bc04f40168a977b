"""
State machine definitions for stock documents.

Transfers and serialized units both move through a ``Workflow``: the
definition lists the states and legal edges, and the service that owns the
document decides what each edge does to stock.  Nothing here touches the
database.

A definition is only valid when its initial state and every transition
endpoint are among ``states`` and no edge leaves a terminal state.
"""

from __future__ import annotations

from dataclasses import dataclass

from stock_kernel.domain.values import SerialStatus


@dataclass(frozen=True)
class Guard:
    """Named precondition on an edge; the owning service evaluates it."""
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """One legal edge.

    ``moves_stock=True`` marks an edge that writes stock movements.
    """
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    moves_stock: bool = False


@dataclass(frozen=True)
class Workflow:
    """Lifecycle of one document type.

    ``from_state="*"`` on a transition means "from any non-terminal state".
    """
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"Workflow {self.name}: initial state {self.initial_state!r} "
                f"is not a declared state"
            )
        for t in self.transitions:
            if t.from_state != "*" and t.from_state not in self.states:
                raise ValueError(
                    f"Workflow {self.name}: unknown from_state {t.from_state!r}"
                )
            if t.to_state not in self.states:
                raise ValueError(
                    f"Workflow {self.name}: unknown to_state {t.to_state!r}"
                )
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Workflow {self.name}: terminal state {t.from_state!r} "
                    f"has an outgoing transition"
                )

    def find(self, from_state: str, to_state: str) -> Transition | None:
        """Return the transition from ``from_state`` to ``to_state``, if any."""
        for t in self.transitions:
            if t.to_state != to_state:
                continue
            if t.from_state == from_state:
                return t
            if t.from_state == "*" and from_state not in self.terminal_states:
                return t
        return None

    def targets(self, from_state: str) -> tuple[str, ...]:
        """States reachable from ``from_state`` in a single step."""
        return tuple(
            t.to_state
            for t in self.transitions
            if t.from_state == from_state
            or (t.from_state == "*" and from_state not in self.terminal_states)
        )


# -----------------------------------------------------------------------------
# Serial unit lifecycle
# -----------------------------------------------------------------------------

_S = SerialStatus

SERIAL_LIFECYCLE = Workflow(
    name="serial_unit",
    description="Lifecycle of an individually tracked unit",
    initial_state=_S.IN_STOCK.value,
    states=tuple(s.value for s in SerialStatus),
    transitions=(
        Transition(_S.IN_STOCK.value, _S.IN_TRANSIT.value, action="transfer_out"),
        Transition(_S.IN_TRANSIT.value, _S.IN_STOCK.value, action="transfer_in"),
        Transition(_S.IN_STOCK.value, _S.SOLD.value, action="sale"),
        Transition(_S.SOLD.value, _S.IN_STOCK.value, action="sale_void"),
        Transition(_S.SOLD.value, _S.RETURNED.value, action="customer_return"),
        Transition(_S.SOLD.value, _S.DAMAGED.value, action="customer_return"),
        Transition(_S.SOLD.value, _S.DEFECTIVE.value, action="customer_return"),
        Transition(_S.RETURNED.value, _S.IN_STOCK.value, action="adjustment"),
        # Units handed back to the supplier leave the system for good.
        Transition("*", _S.WARRANTY_RETURN.value, action="supplier_return"),
    ),
    terminal_states=(_S.WARRANTY_RETURN.value,),
)
