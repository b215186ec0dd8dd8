from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .models import RoutingReason

_ALLOWED_PAIRS: frozenset[frozenset[str]] = frozenset(
    {
        frozenset({"seller", "agent"}),
        frozenset({"buyer", "agent"}),
        frozenset({"admin", "buyer"}),
        frozenset({"admin", "seller"}),
        frozenset({"admin", "agent"}),
    }
)

_AGENT_CHANNEL_ONLY = frozenset({"buyer", "seller"})


@dataclass(frozen=True)
class RoutingDecision:
    allowed: bool
    reason: RoutingReason | None = None
    message: str = "routing_ok"


def _normalize_role(role: str | None) -> str:
    return (role or "").strip().lower()


def evaluate_role_pair(role_a: str | None, role_b: str | None) -> RoutingDecision:
    """Decide whether two roles may exchange messages directly.

    The pair is unordered. Buyers and sellers never talk directly; they go
    through an agent.
    """
    pair = frozenset({_normalize_role(role_a), _normalize_role(role_b)})

    if pair == _AGENT_CHANNEL_ONLY:
        return RoutingDecision(
            allowed=False,
            reason="ROUTING_BLOCKED",
            message="Direct buyer-seller communication is not allowed. Use the agent channel.",
        )

    if pair in _ALLOWED_PAIRS:
        return RoutingDecision(allowed=True)

    return RoutingDecision(
        allowed=False,
        reason="INVALID_PAIR",
        message=f"Invalid messaging combination: {_normalize_role(role_a) or 'unknown'} and {_normalize_role(role_b) or 'unknown'}",
    )


def evaluate_thread_roles(roles: Iterable[str]) -> RoutingDecision:
    """Re-validate an existing thread from the role snapshots stored on it."""
    normalized = {_normalize_role(role) for role in roles}
    if "buyer" in normalized and "seller" in normalized and "agent" not in normalized:
        return RoutingDecision(
            allowed=False,
            reason="ROUTING_BLOCKED",
            message="Direct buyer-seller communication is not allowed. Use the agent channel.",
        )
    return RoutingDecision(allowed=True)
