"""Order status and actor role enums for the delivery order lifecycle.

This module defines the order status values exactly as they are stored and
exchanged with the mobile clients, the actor roles allowed to move an order,
and the transition tables used by the state machine in both its permissive
(default) and strict modes.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Set


class OrderStatus(str, Enum):
    """Order lifecycle status.

    Progression:
    - PENDING -> IN_PREPARATION -> IN_DELIVERY -> DELIVERED
    - any non-terminal status -> CANCELLED (reason required)
    - CANCELLED -> IN_PREPARATION (reactivation, admin/manager only)
    - DELIVERED -> (terminal state)
    """

    PENDING = "Pendente"
    IN_PREPARATION = "Em Preparação"
    IN_DELIVERY = "A caminho"
    DELIVERED = "Entregue"
    CANCELLED = "Cancelado"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert a stored or user supplied string to OrderStatus.

        Accepts the stored value in any letter case as well as the member
        name (``"IN_DELIVERY"``).

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        normalized = value.strip()
        for status in cls:
            if normalized.casefold() in (
                status.value.casefold(),
                status.name.casefold(),
            ):
                return status

        valid_values = ", ".join(s.value for s in cls)
        raise ValueError(
            f"Invalid order status: {value}. Valid values are: {valid_values}"
        )

    def is_terminal(self) -> bool:
        """Check if status is a terminal state.

        Returns:
            True for DELIVERED and CANCELLED
        """
        return self in {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

    def is_active(self) -> bool:
        """Check if the order still awaits delivery."""
        return not self.is_terminal()

    @property
    def rank(self) -> Optional[int]:
        """Position in the forward progression, None for CANCELLED."""
        try:
            return ORDER_STATUS_PROGRESSION.index(self)
        except ValueError:
            return None

    @property
    def customer_message(self) -> str:
        """Customer-facing sentence announcing this status."""
        return CUSTOMER_STATUS_MESSAGES.get(
            self,
            f"O status do seu pedido foi atualizado para: {self.value}",
        )


class ActorRole(str, Enum):
    """Role of whoever acts on an order."""

    ADMIN = "admin"
    MANAGER = "manager"
    COURIER = "courier"
    SYSTEM = "system"
    CUSTOMER = "customer"

    @classmethod
    def from_string(cls, value: str) -> "ActorRole":
        """Convert string to ActorRole enum.

        Raises:
            ValueError: If value is not a valid role
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join(r.value for r in cls)
            raise ValueError(
                f"Invalid actor role: {value}. Valid values are: {valid_values}"
            )

    def is_staff(self) -> bool:
        """Back-office roles with full control over orders."""
        return self in {ActorRole.ADMIN, ActorRole.MANAGER}

    def can_reactivate(self) -> bool:
        """Only back-office staff may reverse a cancellation."""
        return self.is_staff()


ORDER_STATUS_PROGRESSION = (
    OrderStatus.PENDING,
    OrderStatus.IN_PREPARATION,
    OrderStatus.IN_DELIVERY,
    OrderStatus.DELIVERED,
)

# Canonical next steps, used when strict transitions are enabled
CANONICAL_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.IN_PREPARATION,
        OrderStatus.CANCELLED,
    },
    OrderStatus.IN_PREPARATION: {
        OrderStatus.IN_DELIVERY,
        OrderStatus.CANCELLED,
    },
    OrderStatus.IN_DELIVERY: {
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.DELIVERED: set(),  # Terminal
    OrderStatus.CANCELLED: {
        OrderStatus.IN_PREPARATION,  # Reactivation
    },
}

ROLE_ALLOWED_TARGETS: Dict[ActorRole, FrozenSet[OrderStatus]] = {
    ActorRole.ADMIN: frozenset(OrderStatus),
    ActorRole.MANAGER: frozenset(OrderStatus),
    ActorRole.SYSTEM: frozenset(OrderStatus),
    ActorRole.COURIER: frozenset(
        {
            OrderStatus.IN_DELIVERY,
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
        }
    ),
    ActorRole.CUSTOMER: frozenset(),
}

CUSTOMER_STATUS_MESSAGES: Dict[OrderStatus, str] = {
    OrderStatus.PENDING: "O seu pedido foi recebido e está aguardando confirmação.",
    OrderStatus.IN_PREPARATION: "O seu pedido está sendo preparado.",
    OrderStatus.IN_DELIVERY: "O seu pedido saiu para entrega.",
    OrderStatus.DELIVERED: "O seu pedido foi entregue com sucesso!",
    OrderStatus.CANCELLED: "O seu pedido foi cancelado.",
}

REACTIVATION_NOTE = "Pedido reativado"
NEGLECTED_CANCEL_REASON = "Negligenciado"


def get_allowed_order_transitions(
    current_status: OrderStatus,
    strict: bool = False,
) -> Set[OrderStatus]:
    """Get statuses reachable from the current status.

    In permissive mode any strictly later status in the progression is
    reachable, so ``Pendente -> Entregue`` is accepted.

    Args:
        current_status: Current order status
        strict: Restrict to canonical next steps

    Returns:
        Set of reachable statuses
    """
    if strict or current_status.is_terminal():
        return set(CANONICAL_TRANSITIONS[current_status])

    current_rank = current_status.rank
    allowed = {
        status
        for status in ORDER_STATUS_PROGRESSION
        if status.rank > current_rank
    }
    allowed.add(OrderStatus.CANCELLED)
    return allowed


def validate_order_status_transition(
    current_status: OrderStatus,
    target_status: OrderStatus,
    strict: bool = False,
) -> bool:
    """Validate if an order status transition is allowed.

    Args:
        current_status: Current order status
        target_status: Target order status
        strict: Restrict to canonical next steps

    Returns:
        True if transition is valid, False otherwise
    """
    return target_status in get_allowed_order_transitions(current_status, strict)


def is_reactivation(
    current_status: OrderStatus,
    target_status: OrderStatus,
) -> bool:
    """Check whether a transition reverses a cancellation."""
    return (
        current_status == OrderStatus.CANCELLED
        and target_status == OrderStatus.IN_PREPARATION
    )
