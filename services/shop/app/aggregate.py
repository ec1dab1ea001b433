"""
Shop Service — 注文ステータスの状態機械

状態遷移:
    PENDING → CONFIRMED → SHIPPED → DELIVERED   (前進のみ)
    PENDING | CONFIRMED | SHIPPED → CANCELLED

DELIVERED と CANCELLED は終端状態で、そこからの遷移はない。
遷移表に無い遷移はすべて InvalidTransition で拒否する。
"""

from .errors import InvalidTransition
from .models import OrderStatus

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    """遷移表で到達可能でなければ InvalidTransition を送出する。"""
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)


def ensure_cancellable(current: OrderStatus) -> None:
    """キャンセル可否の判定。終端状態ごとにメッセージを変える。"""
    if current is OrderStatus.DELIVERED:
        raise InvalidTransition(
            current.value, OrderStatus.CANCELLED.value, "cannot cancel a delivered order"
        )
    if current is OrderStatus.CANCELLED:
        raise InvalidTransition(
            current.value, OrderStatus.CANCELLED.value, "order already cancelled"
        )
