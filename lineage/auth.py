"""
Actor resolution.

Request identity moves through a small state machine:

    anonymous --sign_in--> authenticated --link_profile--> profile_linked
    profile_linked --block--> blocked --unblock--> profile_linked
    any signed-in state --sign_out--> signed_out --sign_in--> authenticated

The core never reads ambient request state; routes resolve an ActorContext
once and pass the profile id in explicitly.
"""
from __future__ import annotations
from dataclasses import dataclass
import enum
from typing import Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import NotAuthenticated, ProfileNotLinked, ValidationFailed
from .models import Person, SuggestionBlock, ADMIN_ROLES


class AuthState(str, enum.Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    PROFILE_LINKED = "profile_linked"
    BLOCKED = "blocked"
    SIGNED_OUT = "signed_out"


TRANSITIONS: Dict[Tuple[AuthState, str], AuthState] = {
    (AuthState.ANONYMOUS, "sign_in"): AuthState.AUTHENTICATED,
    (AuthState.SIGNED_OUT, "sign_in"): AuthState.AUTHENTICATED,
    (AuthState.AUTHENTICATED, "link_profile"): AuthState.PROFILE_LINKED,
    (AuthState.AUTHENTICATED, "sign_out"): AuthState.SIGNED_OUT,
    (AuthState.PROFILE_LINKED, "block"): AuthState.BLOCKED,
    (AuthState.PROFILE_LINKED, "unlink_profile"): AuthState.AUTHENTICATED,
    (AuthState.PROFILE_LINKED, "sign_out"): AuthState.SIGNED_OUT,
    (AuthState.BLOCKED, "unblock"): AuthState.PROFILE_LINKED,
    (AuthState.BLOCKED, "sign_out"): AuthState.SIGNED_OUT,
}


def transition(state: AuthState, event: str) -> AuthState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise ValidationFailed(f"cannot {event} from {state.value}", field="auth_state") from None


@dataclass(frozen=True)
class ActorContext:
    state: AuthState
    auth_user_id: Optional[str] = None
    profile_id: Optional[int] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def require_profile(self) -> int:
        """Profile id of a signed-in actor; raises for anyone without one."""
        if self.state in (AuthState.ANONYMOUS, AuthState.SIGNED_OUT):
            raise NotAuthenticated()
        if self.profile_id is None:
            raise ProfileNotLinked(auth_user_id=self.auth_user_id)
        return self.profile_id


def resolve_actor(session: Session, auth_user_id: Optional[str]) -> ActorContext:
    auth_user_id = (auth_user_id or "").strip() or None
    state = AuthState.ANONYMOUS
    if auth_user_id is None:
        return ActorContext(state)

    state = transition(state, "sign_in")
    person = session.execute(
        select(Person).where(Person.user_id == auth_user_id, Person.deleted_at.is_(None))
    ).scalar_one_or_none()
    if person is None:
        return ActorContext(state, auth_user_id)

    state = transition(state, "link_profile")
    blocked = session.execute(
        select(SuggestionBlock.id).where(
            SuggestionBlock.blocked_user_id == person.id,
            SuggestionBlock.is_active.is_(True),
        ).limit(1)
    ).first()
    if blocked is not None:
        state = transition(state, "block")
    return ActorContext(state, auth_user_id, person.id, person.role)
