"""Field visibility of order documents per observer.

Admins see the whole document. Couriers do not see the customer's review or
ledger annotations. Customers do not see internal identifiers, the version
counter or who moved their order, and get the status sentence shown in the
customer app instead.
"""

import copy
from enum import Enum
from typing import Any, Mapping

from pharmadelivery.services.orders.enums import ActorRole, OrderStatus

COURIER_HIDDEN_FIELDS = frozenset({"rating", "reviewComment", "reviewDate"})
CUSTOMER_HIDDEN_FIELDS = frozenset({"deliveryMan", "pharmacyUnitId", "version"})
COURIER_HIDDEN_HISTORY_FIELDS = frozenset({"note"})
CUSTOMER_HIDDEN_HISTORY_FIELDS = frozenset({"note", "actor"})


class ViewRole(str, Enum):
    """Observer classes with their own visibility policy."""

    ADMIN = "admin"
    COURIER = "courier"
    CUSTOMER = "customer"

    @classmethod
    def from_actor(cls, role: ActorRole) -> "ViewRole":
        """Map an authenticated role to its view."""
        if role == ActorRole.COURIER:
            return cls.COURIER
        if role == ActorRole.CUSTOMER:
            return cls.CUSTOMER
        return cls.ADMIN


def _strip_history(history: Any, hidden: frozenset) -> list[dict[str, Any]]:
    return [
        {key: value for key, value in entry.items() if key not in hidden}
        for entry in (history or [])
        if isinstance(entry, Mapping)
    ]


def status_message(status: Any) -> str:
    """Customer-facing sentence for a stored status value."""
    try:
        return OrderStatus.from_string(str(status)).customer_message
    except ValueError:
        return f"O status do seu pedido foi atualizado para: {status}"


def apply_view(document: Mapping[str, Any], view: ViewRole) -> dict[str, Any]:
    """
    Filter an order document for an observer.

    Args:
        document: Full order document
        view: Observer view

    Returns:
        New document; the input is not modified
    """
    filtered = copy.deepcopy(dict(document))
    if view == ViewRole.ADMIN:
        return filtered

    if view == ViewRole.COURIER:
        for field in COURIER_HIDDEN_FIELDS:
            filtered.pop(field, None)
        filtered["statusHistory"] = _strip_history(
            filtered.get("statusHistory"), COURIER_HIDDEN_HISTORY_FIELDS
        )
        return filtered

    for field in CUSTOMER_HIDDEN_FIELDS:
        filtered.pop(field, None)
    filtered["statusHistory"] = _strip_history(
        filtered.get("statusHistory"), CUSTOMER_HIDDEN_HISTORY_FIELDS
    )
    filtered["statusMessage"] = status_message(filtered.get("status"))
    return filtered


def apply_position_view(position: Any, view: ViewRole) -> Any:
    """Customers see where their order is but not which courier record carries it."""
    if position is None or view != ViewRole.CUSTOMER:
        return position
    return {key: value for key, value in position.items() if key != "deliverymanId"}
