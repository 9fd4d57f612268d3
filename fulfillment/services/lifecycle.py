"""
Order Lifecycle State Machine

Channel-aware status vocabularies with one-directional, single-step
advancement:

    dining   pending → accepted → preparing → ready → delivered → completed
    delivery pending → accepted → preparing → ready → out_for_delivery → delivered
    pickup   pending → accepted → preparing → ready → completed

Advancing from the last status is a no-op. Targets outside the channel's
vocabulary, skipped steps and backwards moves raise InvalidTransition.
There is no revert operation.
"""

from typing import Optional, Union

from fulfillment.core.exceptions import InvalidTransition
from fulfillment.models import Channel

PENDING = "pending"
ACCEPTED = "accepted"
PREPARING = "preparing"
READY = "ready"
OUT_FOR_DELIVERY = "out_for_delivery"
DELIVERED = "delivered"
COMPLETED = "completed"

CHANNEL_FLOWS: dict[Channel, tuple[str, ...]] = {
    Channel.DINING: (PENDING, ACCEPTED, PREPARING, READY, DELIVERED, COMPLETED),
    Channel.DELIVERY: (PENDING, ACCEPTED, PREPARING, READY, OUT_FOR_DELIVERY, DELIVERED),
    Channel.PICKUP: (PENDING, ACCEPTED, PREPARING, READY, COMPLETED),
}

TERMINAL_STATUSES: dict[Channel, frozenset[str]] = {
    Channel.DINING: frozenset({COMPLETED}),
    Channel.DELIVERY: frozenset({DELIVERED}),
    Channel.PICKUP: frozenset({COMPLETED}),
}

# Dine-in orders stop advancing from the kitchen once served; only the
# bill closes them.
KITCHEN_FREEZE: dict[Channel, frozenset[str]] = {
    Channel.DINING: frozenset({DELIVERED, COMPLETED}),
    Channel.DELIVERY: TERMINAL_STATUSES[Channel.DELIVERY],
    Channel.PICKUP: TERMINAL_STATUSES[Channel.PICKUP],
}

# Transitions that finalize a bill and so need a payment method
PAYMENT_GUARDED = frozenset({COMPLETED})

STATUS_TIMESTAMP_FIELDS = {
    ACCEPTED: "accepted_at",
    PREPARING: "preparing_at",
    READY: "ready_at",
    OUT_FOR_DELIVERY: "out_for_delivery_at",
    DELIVERED: "delivered_at",
    COMPLETED: "completed_at",
}


def as_channel(channel: Union[Channel, str]) -> Channel:
    if isinstance(channel, Channel):
        return channel
    try:
        return Channel(str(channel).strip().lower())
    except ValueError:
        raise InvalidTransition(f"Unknown channel '{channel}'", channel=str(channel))


def normalize_status(status: Optional[str]) -> str:
    """Trim, lowercase, and turn spaces and hyphens into underscores."""
    if not status:
        return ""
    return "_".join(str(status).strip().lower().replace("-", " ").split())


def flow_for(channel: Union[Channel, str]) -> tuple[str, ...]:
    return CHANNEL_FLOWS[as_channel(channel)]


def is_terminal(channel: Union[Channel, str], status: str) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES[as_channel(channel)]


def can_advance(channel: Union[Channel, str], status: str) -> bool:
    """Whether kitchen-facing views may offer an advance action."""
    return normalize_status(status) not in KITCHEN_FREEZE[as_channel(channel)]


def next_status(channel: Union[Channel, str], current: str) -> str:
    """
    The status after ``current``, or ``current`` itself at the end of the flow.

    Raises:
        InvalidTransition: If ``current`` is not in the channel's vocabulary
    """
    channel = as_channel(channel)
    flow = CHANNEL_FLOWS[channel]
    current = normalize_status(current)
    if current not in flow:
        raise InvalidTransition(
            f"Status '{current}' is not valid for {channel.value} orders",
            current=current,
            channel=channel.value,
        )
    index = flow.index(current)
    return flow[index + 1] if index + 1 < len(flow) else current


def check_transition(channel: Union[Channel, str], current: str, target: str) -> bool:
    """
    Validate a requested transition.

    Returns:
        True if the order must move to ``target``; False if ``target`` is
        the current status (nothing to do)

    Raises:
        InvalidTransition: Target outside the channel vocabulary, a skipped
        step, or a move backwards
    """
    channel = as_channel(channel)
    flow = CHANNEL_FLOWS[channel]
    current = normalize_status(current)
    target = normalize_status(target)

    if target not in flow:
        raise InvalidTransition(
            f"Status '{target}' is not valid for {channel.value} orders",
            current=current,
            target=target,
            channel=channel.value,
        )
    if target == current:
        return False

    expected = next_status(channel, current)
    if target != expected:
        raise InvalidTransition(
            f"Cannot move a {channel.value} order from '{current}' to '{target}'"
            f" (next step is '{expected}')",
            current=current,
            target=target,
            channel=channel.value,
        )
    return True


def status_timestamp_field(status: str) -> Optional[str]:
    """Name of the Order column stamped when ``status`` is entered."""
    return STATUS_TIMESTAMP_FIELDS.get(normalize_status(status))


def display_bucket(channel: Union[Channel, str], status: str) -> str:
    """Map a status onto the channel's listing filter bucket."""
    channel = as_channel(channel)
    status = normalize_status(status)

    if channel == Channel.DINING:
        if status in (DELIVERED, COMPLETED, "served"):
            return "served"
        if status in (READY, PREPARING):
            return status
        return PENDING

    if channel == Channel.DELIVERY:
        if status in (DELIVERED, COMPLETED):
            return DELIVERED
        if status in (OUT_FOR_DELIVERY, "dispatched"):
            return OUT_FOR_DELIVERY
        return PENDING

    if status in (COMPLETED, DELIVERED, "picked_up"):
        return COMPLETED
    if status in (READY, PREPARING):
        return status
    return PENDING
