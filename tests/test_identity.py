from __future__ import annotations

from conftest import FakeAssistant

from insightdesk.domain.workspaces import IdentityKind
from insightdesk.infrastructure.assistant import (
    NoOpAssistantClient,
    configure_assistant_client,
    get_assistant_client,
)
from insightdesk.infrastructure.identity import GuestTokenSigner, resolve_identity


def test_guest_token_round_trip():
    signer = GuestTokenSigner("secret")
    session, token = signer.issue()

    assert signer.unsign(token) == session
    assert GuestTokenSigner("other").unsign(token) is None
    assert signer.unsign("garbage") is None


def test_member_header_wins_over_guest_cookie():
    signer = GuestTokenSigner("secret")
    _, token = signer.issue()

    identity = resolve_identity(
        {"x-member-id": " member-7 ", "x-plan": "business"}, {"guest_token": token}, signer, trust_plan_header=True
    )

    assert identity.kind is IdentityKind.MEMBER
    assert identity.id == "member-7"
    assert identity.plan == "business"


def test_plan_header_is_ignored_unless_trusted():
    signer = GuestTokenSigner("secret")

    identity = resolve_identity({"x-member-id": "member-7", "x-plan": "business"}, {}, signer)

    assert identity.kind is IdentityKind.MEMBER
    assert identity.plan == "member"


def test_tampered_cookie_yields_sessionless_guest():
    signer = GuestTokenSigner("secret")
    session, token = signer.issue()

    trusted = resolve_identity({}, {"guest_token": token}, signer)
    tampered = resolve_identity({}, {"guest_token": "x" + token}, signer)

    assert trusted.session == session
    assert trusted.plan == "guest"
    assert tampered.kind is IdentityKind.GUEST
    assert tampered.session is None


def test_guest_token_header_is_accepted():
    signer = GuestTokenSigner("secret")
    session, token = signer.issue()

    assert resolve_identity({"x-guest-token": token}, {}, signer).session == session


def test_assistant_client_can_be_swapped():
    fake = FakeAssistant()
    configure_assistant_client(fake)
    try:
        assert get_assistant_client() is fake
    finally:
        configure_assistant_client(NoOpAssistantClient())

    assert isinstance(get_assistant_client(), NoOpAssistantClient)
