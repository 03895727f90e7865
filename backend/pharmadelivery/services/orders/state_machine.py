"""Order state machine implementation with transition validation.

This module implements the OrderStateMachine class for managing order lifecycle
transitions with validation, role gating, guards, and side effects. The machine
is pure: it computes the column changes a transition implies and leaves the
write to the caller, which persists them as one compare-and-swap statement.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from pharmadelivery.core.logging import get_logger
from pharmadelivery.core.timeutils import utc_now
from pharmadelivery.services.orders.enums import (
    REACTIVATION_NOTE,
    ROLE_ALLOWED_TARGETS,
    ActorRole,
    OrderStatus,
    get_allowed_order_transitions,
    is_reactivation,
    validate_order_status_transition,
)
from pharmadelivery.services.orders.formatting import short_name
from pharmadelivery.services.orders.ledger import StatusHistoryEntry, append_entry

logger = get_logger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_state: Optional[OrderStatus],
        target_state: Optional[OrderStatus],
        **context: Any
    ):
        super().__init__(message)
        self.current_state = current_state
        self.target_state = target_state
        self.context = context


class TransitionNotPermittedError(InvalidTransitionError):
    """Raised when the actor role may not apply the requested transition."""


@dataclass(frozen=True)
class TransitionContext:
    """Inputs of one transition besides the order itself."""

    current_status: OrderStatus
    target_status: OrderStatus
    actor: ActorRole
    timestamp: datetime
    reason: Optional[str] = None
    note: Optional[str] = None
    courier: Any = None

    @property
    def is_reactivation(self) -> bool:
        return is_reactivation(self.current_status, self.target_status)


class OrderStateMachine:
    """State machine for managing order lifecycle transitions.

    Handles order status transitions with validation, guards, and side effects.
    In the default permissive mode any forward move is accepted; with
    ``strict=True`` only the canonical next step, cancellation and
    reactivation are.
    """

    def __init__(self, strict: bool = False):
        """Initialize state machine.

        Args:
            strict: Restrict transitions to canonical next steps
        """
        self.strict = strict
        self._transition_guards: Dict[
            tuple[OrderStatus, OrderStatus],
            Callable[[Any, TransitionContext], Optional[str]]
        ] = self._initialize_guards()
        self._side_effects: Dict[
            OrderStatus,
            Callable[[Any, TransitionContext, Dict[str, Any]], None]
        ] = self._initialize_side_effects()

    def _initialize_guards(
        self
    ) -> Dict[
        tuple[OrderStatus, OrderStatus],
        Callable[[Any, TransitionContext], Optional[str]]
    ]:
        """Initialize transition guard functions.

        A guard returns None when the transition may proceed, or the
        reason it may not.

        Returns:
            Dictionary mapping state transitions to guard functions
        """
        guards: Dict[
            tuple[OrderStatus, OrderStatus],
            Callable[[Any, TransitionContext], Optional[str]]
        ] = {
            (OrderStatus.CANCELLED, OrderStatus.IN_PREPARATION): (
                self._guard_reactivation
            ),
        }
        for status in OrderStatus:
            if status.is_active():
                guards[(status, OrderStatus.CANCELLED)] = self._guard_cancel_reason
        return guards

    def _initialize_side_effects(
        self
    ) -> Dict[OrderStatus, Callable[[Any, TransitionContext, Dict[str, Any]], None]]:
        """Initialize side effect handlers for state transitions.

        Returns:
            Dictionary mapping target states to side effect functions
        """
        return {
            OrderStatus.IN_PREPARATION: self._effect_in_preparation,
            OrderStatus.IN_DELIVERY: self._effect_courier_stamp,
            OrderStatus.DELIVERED: self._effect_courier_stamp,
            OrderStatus.CANCELLED: self._effect_cancelled,
        }

    def get_allowed_transitions(self, order: Any) -> Set[OrderStatus]:
        """Get allowed transitions from current order status.

        Args:
            order: Order instance

        Returns:
            Set of allowed target statuses
        """
        return get_allowed_order_transitions(order.status, self.strict)

    def validate_transition(
        self,
        order: Any,
        target_status: OrderStatus,
        actor: ActorRole,
        reason: Optional[str] = None,
    ) -> bool:
        """Validate if transition to target status is allowed.

        Args:
            order: Order instance to validate
            target_status: Desired target status
            actor: Role of the actor initiating the transition
            reason: Optional reason for transition

        Returns:
            True if transition is valid

        Raises:
            TransitionNotPermittedError: If the role may not set the target
            InvalidTransitionError: If transition is invalid
        """
        current_status = order.status
        context = TransitionContext(
            current_status=current_status,
            target_status=target_status,
            actor=actor,
            timestamp=utc_now(),
            reason=reason.strip() if reason and reason.strip() else None,
        )
        self._validate(order, context)
        return True

    def _validate(self, order: Any, context: TransitionContext) -> None:
        current_status = context.current_status
        target_status = context.target_status

        if target_status not in ROLE_ALLOWED_TARGETS.get(context.actor, frozenset()):
            self._reject(
                order,
                context,
                TransitionNotPermittedError,
                f"Role {context.actor.value} may not set status {target_status.value}",
                actor=context.actor.value,
            )

        if not validate_order_status_transition(current_status, target_status, self.strict):
            allowed = get_allowed_order_transitions(current_status, self.strict)
            self._reject(
                order,
                context,
                InvalidTransitionError,
                f"Invalid transition from {current_status.value} to "
                f"{target_status.value}",
                allowed_transitions=sorted(s.value for s in allowed),
            )

        guard = self._transition_guards.get((current_status, target_status))
        if guard is not None:
            failure = guard(order, context)
            if failure is not None:
                error_class = (
                    TransitionNotPermittedError
                    if context.is_reactivation
                    else InvalidTransitionError
                )
                self._reject(order, context, error_class, failure, guard_failed=True)

    def _reject(
        self,
        order: Any,
        context: TransitionContext,
        error_class: type,
        message: str,
        **details: Any,
    ) -> None:
        logger.warning(
            "Order transition rejected",
            order_id=str(order.id),
            from_status=context.current_status.value,
            to_status=context.target_status.value,
            actor=context.actor.value,
            reason=message,
        )
        raise error_class(
            message,
            current_state=context.current_status,
            target_state=context.target_status,
            **details,
        )

    def plan_transition(
        self,
        order: Any,
        target_status: OrderStatus,
        actor: ActorRole,
        reason: Optional[str] = None,
        note: Optional[str] = None,
        courier: Any = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Compute the column changes of a transition without applying them.

        Args:
            order: Current order snapshot
            target_status: Target status to transition to
            actor: Role of the actor initiating the transition
            reason: Reason for transition, required for cancellation
            note: Free-text annotation stored in the ledger entry
            courier: Deliveryman acting on the order, stamped on courier moves
            now: Transition timestamp, defaults to the current time

        Returns:
            Mapping of order attribute names to their new values

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        timestamp = now or utc_now()
        reason = reason.strip() if reason else None
        note = note.strip() if note else None

        context = TransitionContext(
            current_status=order.status,
            target_status=target_status,
            actor=actor,
            timestamp=timestamp,
            reason=reason or None,
            note=note or None,
            courier=courier,
        )
        self._validate(order, context)

        changes: Dict[str, Any] = {
            "status": target_status,
            "last_status_update": timestamp,
            "updated_at": timestamp,
        }

        side_effect = self._side_effects.get(target_status)
        if side_effect is not None:
            side_effect(order, context, changes)

        changes["status_history"] = self._record_status_change(order, context, changes)
        return changes

    def apply_transition(
        self,
        order: Any,
        target_status: OrderStatus,
        actor: ActorRole,
        reason: Optional[str] = None,
        note: Optional[str] = None,
        courier: Any = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Apply state transition to an in-memory order.

        Args:
            order: Order instance to transition
            target_status: Target status to transition to
            actor: Role of the actor initiating the transition
            reason: Reason for transition, required for cancellation
            note: Free-text annotation stored in the ledger entry
            courier: Deliveryman acting on the order
            now: Transition timestamp

        Returns:
            The changes that were applied

        Raises:
            InvalidTransitionError: If transition fails
        """
        old_status = order.status
        changes = self.plan_transition(
            order, target_status, actor, reason=reason, note=note, courier=courier, now=now
        )
        for attribute, value in changes.items():
            setattr(order, attribute, value)

        logger.info(
            "Order transition applied",
            order_id=str(order.id),
            from_status=old_status.value,
            to_status=target_status.value,
            actor=actor.value,
        )
        return changes

    def _record_status_change(
        self,
        order: Any,
        context: TransitionContext,
        changes: Dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Build the ledger with the entry for this transition appended."""
        entry = StatusHistoryEntry(
            status=context.target_status.value,
            timestamp=context.timestamp,
            reason=context.reason if context.target_status == OrderStatus.CANCELLED else None,
            note=context.note or (REACTIVATION_NOTE if context.is_reactivation else None),
            actor=context.actor.value,
        )
        return append_entry(order.status_history, entry)

    # Transition Guards

    def _guard_cancel_reason(self, order: Any, context: TransitionContext) -> Optional[str]:
        """Cancellation requires a non-blank reason."""
        if not context.reason:
            return "A reason is required to cancel an order"
        return None

    def _guard_reactivation(self, order: Any, context: TransitionContext) -> Optional[str]:
        """Only back-office staff may reverse a cancellation."""
        if not context.actor.can_reactivate():
            return f"Role {context.actor.value} may not reactivate a cancelled order"
        return None

    # Side Effects

    def _effect_in_preparation(
        self, order: Any, context: TransitionContext, changes: Dict[str, Any]
    ) -> None:
        """Reactivation clears the courier assignment and marks the ledger."""
        if not context.is_reactivation:
            return
        changes["delivery_man_id"] = None
        changes["delivery_man_name"] = None
        changes["license_plate"] = None
        changes["cancel_reason"] = None

    def _effect_courier_stamp(
        self, order: Any, context: TransitionContext, changes: Dict[str, Any]
    ) -> None:
        """Couriers moving an order take it over."""
        courier = context.courier
        if context.actor != ActorRole.COURIER or courier is None:
            return
        changes["delivery_man_id"] = courier.id
        changes["delivery_man_name"] = short_name(courier.name)
        if courier.license_plate:
            changes["license_plate"] = courier.license_plate

    def _effect_cancelled(
        self, order: Any, context: TransitionContext, changes: Dict[str, Any]
    ) -> None:
        # Courier assignment is kept for audit
        changes["cancel_reason"] = context.reason
        self._effect_courier_stamp(order, context, changes)


def get_order_state_machine(strict: Optional[bool] = None) -> OrderStateMachine:
    """Factory function to create OrderStateMachine instance.

    Args:
        strict: Override of the ``strict_transitions`` setting

    Returns:
        OrderStateMachine instance
    """
    if strict is None:
        from pharmadelivery.core.config import get_settings

        strict = get_settings().strict_transitions
    return OrderStateMachine(strict=strict)
