"""
Route guard - decides whether a navigation may render protected content.

Session state is an immutable snapshot of {principal, entitlement} held by a
SessionContext. Consumers subscribe to it and re-decide whenever a new
snapshot is published (sign-in, sign-out, a purchase finishing elsewhere).
"""

import enum
import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Deque, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.auth.user import Principal
from services.entitlement import EntitlementStatus, NO_ENTITLEMENT
from services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

AUTH_PATH = "/auth"
BILLING_PATH = "/pricing"

# Recent decisions kept per guard
HISTORY_LIMIT = 20


class GuardState(str, enum.Enum):
    RESOLVING = "resolving"
    AUTHORIZED = "authorized"
    REDIRECT_AUTH = "redirect_auth"
    REDIRECT_BILLING = "redirect_billing"


@dataclass(frozen=True)
class SessionSnapshot:
    principal: Optional[Principal] = None
    entitlement: EntitlementStatus = NO_ENTITLEMENT
    auth_loading: bool = True
    entitlement_loading: bool = True


@dataclass(frozen=True)
class GuardDecision:
    state: GuardState
    redirect_to: Optional[str] = None
    return_to: Optional[str] = None


def decide(snapshot: SessionSnapshot, requested_path: str = "/") -> GuardDecision:
    """
    RESOLVING while either fetch is in flight, then exactly one terminal state.
    """
    if snapshot.auth_loading or snapshot.entitlement_loading:
        return GuardDecision(GuardState.RESOLVING)

    if snapshot.principal is None:
        return GuardDecision(GuardState.REDIRECT_AUTH, redirect_to=AUTH_PATH, return_to=requested_path)

    if not snapshot.entitlement.has_active_subscription:
        return GuardDecision(GuardState.REDIRECT_BILLING, redirect_to=BILLING_PATH)

    return GuardDecision(GuardState.AUTHORIZED)


Listener = Callable[[SessionSnapshot], None]


class SessionContext:
    """
    Holder of the current SessionSnapshot.

    refresh() publishes a new snapshot; load() fetches the entitlement for a
    principal. Every load is stamped with a generation number so that a load
    overtaken by a newer refresh is dropped instead of overwriting it.
    """

    def __init__(self, snapshot: Optional[SessionSnapshot] = None):
        self._snapshot = snapshot or SessionSnapshot()
        self._listeners: List[Listener] = []
        self._generation = 0

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, snapshot: SessionSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            listener(snapshot)

    def refresh(self, **changes) -> SessionSnapshot:
        """Publish a copy of the current snapshot with the given fields replaced."""
        self._generation += 1
        self._publish(replace(self._snapshot, **changes))
        return self._snapshot

    async def load(self, db: AsyncSession, principal: Optional[Principal]) -> SessionSnapshot:
        """
        Resolve authentication and entitlement for a principal (None = signed out).
        """
        self._generation += 1
        generation = self._generation

        if principal is None:
            self._publish(SessionSnapshot(principal=None, auth_loading=False, entitlement_loading=False))
            return self._snapshot

        self._publish(SessionSnapshot(principal=principal, auth_loading=False, entitlement_loading=True))

        entitlement = await SubscriptionService(db).get_entitlement(principal.user_id, is_admin=principal.is_admin)

        if generation != self._generation:
            logger.debug(f"Discarding stale entitlement load for user {principal.user_id}")
            return self._snapshot

        self._publish(SessionSnapshot(
            principal=principal,
            entitlement=entitlement,
            auth_loading=False,
            entitlement_loading=False,
        ))
        return self._snapshot


class RouteGuard:
    """
    Keeps a GuardDecision for one requested path current with its SessionContext.
    """

    def __init__(self, context: SessionContext, requested_path: str = "/"):
        self.context = context
        self.requested_path = requested_path
        self.history: Deque[GuardDecision] = deque(maxlen=HISTORY_LIMIT)
        self.decision = self._evaluate(context.snapshot)
        self._unsubscribe = context.subscribe(self._evaluate)

    def _evaluate(self, snapshot: SessionSnapshot) -> GuardDecision:
        self.decision = decide(snapshot, self.requested_path)
        self.history.append(self.decision)
        return self.decision

    @property
    def state(self) -> GuardState:
        return self.decision.state

    def close(self) -> None:
        self._unsubscribe()
