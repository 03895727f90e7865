"""Delivery run and courier duty enums.

Values match what the courier app stores, so they are kept in the
original Portuguese.
"""

from enum import Enum


class DeliveryRunStatus(str, Enum):
    """Lifecycle of a courier movement log."""

    ACTIVE = "active"
    COMPLETED = "completed"

    def is_open(self) -> bool:
        """Checkpoints may only be appended to open runs."""
        return self == DeliveryRunStatus.ACTIVE


class DutyStatus(str, Enum):
    """Courier shift state, independent of any single order."""

    OFF_DUTY = "Fora de expediente"
    AWAITING_ORDER = "Aguardando pedido"
    DELIVERING = "Em rota de entrega"
    RETURNING = "Retornando a unidade"

    @classmethod
    def from_string(cls, value: str) -> "DutyStatus":
        """Convert string to DutyStatus enum.

        Raises:
            ValueError: If value is not a valid duty status
        """
        for status in cls:
            if value.strip().casefold() in (status.value.casefold(), status.name.casefold()):
                return status
        valid_values = ", ".join(s.value for s in cls)
        raise ValueError(f"Invalid duty status: {value}. Valid values are: {valid_values}")
