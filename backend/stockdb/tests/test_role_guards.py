from datetime import timedelta

import pytest
from fastapi import HTTPException, status

from stockdb.security import (
    Actor,
    ActorRole,
    create_access_token,
    get_current_actor,
    require_roles,
)


def test_token_round_trip_keeps_actor_and_known_roles():
    token = create_access_token(actor_id="svc-orders", roles=["ORDER_SERVICE", ActorRole.VIEWER])

    actor = get_current_actor(token)

    assert actor.id == "svc-orders"
    assert actor.roles == frozenset({ActorRole.ORDER_SERVICE, ActorRole.VIEWER})
    assert actor.is_admin is False


def test_expired_or_garbled_tokens_are_rejected():
    expired = create_access_token(actor_id="svc-orders", expires_delta=timedelta(minutes=-5))

    for token in (expired, "not-a-jwt"):
        with pytest.raises(HTTPException) as exc:
            get_current_actor(token)
        assert exc.value.status_code == status.HTTP_401_UNAUTHORIZED


def test_role_guard_blocks_actor_without_role():
    guard = require_roles("STOCK_MANAGER")
    viewer = Actor(id="viewer-1", roles=frozenset({ActorRole.VIEWER}))

    with pytest.raises(HTTPException) as exc:
        guard(actor=viewer)
    assert exc.value.status_code == status.HTTP_403_FORBIDDEN


def test_role_guard_allows_listed_role_and_admin():
    guard = require_roles("STOCK_MANAGER", "ORDER_SERVICE")
    manager = Actor(id="mgr-1", roles=frozenset({ActorRole.STOCK_MANAGER}))
    admin = Actor(id="root", roles=frozenset({ActorRole.ADMIN}))

    assert guard(actor=manager) is manager
    assert guard(actor=admin) is admin


def test_unknown_role_name_fails_at_definition_time():
    with pytest.raises(ValueError):
        require_roles("SUPERUSER")
