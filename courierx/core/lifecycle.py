"""
Shipment transition graph and edge permissions.

Statuses form a mostly linear path with a QC fork and an optional
pending-payment detour:

    draft -> confirmed -> payment_received -> pickup_scheduled
      -> out_for_pickup -> picked_up -> at_warehouse -> qc_in_progress
      -> {qc_passed | qc_failed} -> [pending_payment] -> dispatched
      -> in_transit -> customs_clearance -> out_for_delivery -> delivered

`cancelled` is reachable from every non-terminal status.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Set, Tuple

from courierx.database.models import Role, ShipmentStatus

S = ShipmentStatus

TERMINAL_STATUSES: FrozenSet[ShipmentStatus] = frozenset({S.DELIVERED, S.CANCELLED})

_FORWARD_EDGES: Dict[ShipmentStatus, Tuple[ShipmentStatus, ...]] = {
    S.DRAFT: (S.CONFIRMED,),
    S.CONFIRMED: (S.PAYMENT_RECEIVED,),
    S.PAYMENT_RECEIVED: (S.PICKUP_SCHEDULED,),
    # Carriers sometimes skip the out-for-pickup scan.
    S.PICKUP_SCHEDULED: (S.OUT_FOR_PICKUP, S.PICKED_UP),
    S.OUT_FOR_PICKUP: (S.PICKED_UP,),
    S.PICKED_UP: (S.AT_WAREHOUSE,),
    S.AT_WAREHOUSE: (S.QC_IN_PROGRESS,),
    S.QC_IN_PROGRESS: (S.QC_PASSED, S.QC_FAILED),
    S.QC_PASSED: (S.PENDING_PAYMENT, S.DISPATCHED),
    S.QC_FAILED: (S.PENDING_PAYMENT,),
    S.PENDING_PAYMENT: (S.QC_PASSED, S.DISPATCHED),
    S.DISPATCHED: (S.IN_TRANSIT,),
    S.IN_TRANSIT: (S.CUSTOMS_CLEARANCE,),
    S.CUSTOMS_CLEARANCE: (S.OUT_FOR_DELIVERY,),
    S.OUT_FOR_DELIVERY: (S.DELIVERED,),
}

TRANSITIONS: Dict[ShipmentStatus, FrozenSet[ShipmentStatus]] = {
    status: frozenset(
        _FORWARD_EDGES.get(status, ())
        + (() if status in TERMINAL_STATUSES else (S.CANCELLED,))
    )
    for status in ShipmentStatus
}

# Edges a customer may trigger on a shipment they own.
CUSTOMER_EDGES: FrozenSet[Tuple[ShipmentStatus, ShipmentStatus]] = frozenset(
    {(S.DRAFT, S.CONFIRMED)}
    | {
        (source, S.CANCELLED)
        for source in (S.DRAFT, S.CONFIRMED, S.PAYMENT_RECEIVED, S.PICKUP_SCHEDULED)
    }
)

# Progress reported by carriers; the automated system actor may drive these.
CARRIER_EDGES: FrozenSet[Tuple[ShipmentStatus, ShipmentStatus]] = frozenset(
    {
        (S.PICKUP_SCHEDULED, S.OUT_FOR_PICKUP),
        (S.PICKUP_SCHEDULED, S.PICKED_UP),
        (S.OUT_FOR_PICKUP, S.PICKED_UP),
        (S.PICKED_UP, S.AT_WAREHOUSE),
        (S.DISPATCHED, S.IN_TRANSIT),
        (S.IN_TRANSIT, S.CUSTOMS_CLEARANCE),
        (S.CUSTOMS_CLEARANCE, S.OUT_FOR_DELIVERY),
        (S.OUT_FOR_DELIVERY, S.DELIVERED),
    }
)

# Money-moving edges only an admin may trigger.
ADMIN_ONLY_EDGES: FrozenSet[Tuple[ShipmentStatus, ShipmentStatus]] = frozenset(
    {(S.CONFIRMED, S.PAYMENT_RECEIVED)}
    | {(source, S.CANCELLED) for source in ShipmentStatus if source not in TERMINAL_STATUSES}
    | {(S.QC_PASSED, S.DISPATCHED), (S.PENDING_PAYMENT, S.DISPATCHED)}
)

STAFF_ROLES: FrozenSet[str] = frozenset({Role.ADMIN.value, Role.WAREHOUSE_OPERATOR.value})

# Next step along the carrier-driven path, used by the simulation worker.
CARRIER_NEXT_STATUS: Dict[ShipmentStatus, ShipmentStatus] = {
    S.PICKUP_SCHEDULED: S.OUT_FOR_PICKUP,
    S.OUT_FOR_PICKUP: S.PICKED_UP,
    S.PICKED_UP: S.AT_WAREHOUSE,
    S.DISPATCHED: S.IN_TRANSIT,
    S.IN_TRANSIT: S.CUSTOMS_CLEARANCE,
    S.CUSTOMS_CLEARANCE: S.OUT_FOR_DELIVERY,
    S.OUT_FOR_DELIVERY: S.DELIVERED,
}


class ActorKind(str, Enum):
    USER = "user"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """
    Explicit caller identity passed into every service call.

    System actors represent scheduler-triggered workers; they carry a
    source label (domestic_sync, simulation) instead of roles.
    """

    user_id: str
    roles: FrozenSet[str] = field(default_factory=lambda: frozenset({Role.CUSTOMER.value}))
    kind: ActorKind = ActorKind.USER

    @classmethod
    def system(cls, source: str) -> "Actor":
        return cls(user_id=f"system:{source}", roles=frozenset(), kind=ActorKind.SYSTEM)

    @classmethod
    def user(cls, user_id: str, roles: Iterable[str] = ()) -> "Actor":
        return cls(user_id=user_id, roles=frozenset(roles) | {Role.CUSTOMER.value})

    @property
    def is_system(self) -> bool:
        return self.kind == ActorKind.SYSTEM

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN.value in self.roles

    @property
    def is_staff(self) -> bool:
        return bool(self.roles & STAFF_ROLES)

    @property
    def source(self) -> str:
        if self.is_system:
            return self.user_id.split(":", 1)[1]
        return "admin" if self.is_staff else "customer"


class AdminAction(str, Enum):
    """Closed set of actions accepted by the admin-action endpoint."""

    CONFIRM_PAYMENT = "confirm_payment"
    SCHEDULE_PICKUP = "schedule_pickup"
    RECEIVE_AT_WAREHOUSE = "receive_at_warehouse"
    QUALITY_CHECK = "quality_check"
    PACKAGE = "package"
    REJECT_QC = "reject_qc"
    REQUEST_PAYMENT = "request_payment"
    APPROVE_DISPATCH = "approve_dispatch"
    CANCEL = "cancel"


ADMIN_ACTION_TARGETS: Dict[AdminAction, ShipmentStatus] = {
    AdminAction.CONFIRM_PAYMENT: S.PAYMENT_RECEIVED,
    AdminAction.SCHEDULE_PICKUP: S.PICKUP_SCHEDULED,
    AdminAction.RECEIVE_AT_WAREHOUSE: S.AT_WAREHOUSE,
    AdminAction.QUALITY_CHECK: S.QC_IN_PROGRESS,
    AdminAction.PACKAGE: S.QC_PASSED,
    AdminAction.REJECT_QC: S.QC_FAILED,
    AdminAction.REQUEST_PAYMENT: S.PENDING_PAYMENT,
    AdminAction.APPROVE_DISPATCH: S.QC_PASSED,
    AdminAction.CANCEL: S.CANCELLED,
}


def is_valid_transition(from_status: ShipmentStatus, to_status: ShipmentStatus) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def is_edge_permitted(
    actor: Actor,
    from_status: ShipmentStatus,
    to_status: ShipmentStatus,
    owner_id: Optional[str],
) -> bool:
    """
    Decide whether `actor` may trigger an already-valid edge.

    Admins may trigger anything. Warehouse operators may trigger staff edges
    except the money-moving admin-only ones. The system actor is limited to
    carrier progress. Customers only get CUSTOMER_EDGES on their own shipments.
    """
    edge = (from_status, to_status)
    if actor.is_system:
        return edge in CARRIER_EDGES
    if actor.is_admin:
        return True
    if Role.WAREHOUSE_OPERATOR.value in actor.roles:
        if edge not in ADMIN_ONLY_EDGES and edge not in CUSTOMER_EDGES:
            return True
    return edge in CUSTOMER_EDGES and owner_id is not None and owner_id == actor.user_id


def reachable_statuses() -> Set[ShipmentStatus]:
    """Statuses reachable from draft; used to check the graph has no orphans."""
    seen: Set[ShipmentStatus] = set()
    frontier = [S.DRAFT]
    while frontier:
        current = frontier.pop()
        if current in seen:
            continue
        seen.add(current)
        frontier.extend(TRANSITIONS[current])
    return seen
