"""Order management with state transitions."""

from __future__ import annotations

from krakenbroker.models import Order, OrderStatus, VALID_TRANSITIONS


class OrderManager:
    def can_transition(self, order: Order, new_status: OrderStatus) -> bool:
        return new_status in VALID_TRANSITIONS.get(order.status, set())

    def transition(self, order: Order, new_status: OrderStatus) -> Order:
        if not self.can_transition(order, new_status):
            raise ValueError(
                f"Invalid transition: {order.status.value} -> {new_status.value}"
            )
        order.status = new_status
        return order
