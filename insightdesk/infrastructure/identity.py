"""Resolve the caller of a request into an :class:`Identity`.

Members are recognised by the ``X-Member-Id`` header set by the upstream
authentication proxy, which must strip both member headers from client
requests. The ``X-Plan`` tier is only honoured when the deployment opts in
with ``trust_plan_header``; otherwise members get the ``member`` plan.
Everyone else is a guest whose local storage bucket is named by a signed
``guest_token`` cookie (or ``X-Guest-Token`` header).
"""
from __future__ import annotations

import hashlib
import hmac
import uuid
from typing import Mapping

from insightdesk.core.logging import get_logger
from insightdesk.domain.workspaces import Identity

LOGGER = get_logger(__name__)

GUEST_COOKIE = "guest_token"
GUEST_HEADER = "x-guest-token"
MEMBER_HEADER = "x-member-id"
PLAN_HEADER = "x-plan"
DEFAULT_MEMBER_PLAN = "member"


class GuestTokenSigner:
    def __init__(self, secret: str) -> None:
        self._secret = secret.encode("utf-8")

    def _signature(self, value: str) -> str:
        return hmac.new(self._secret, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(self, value: str) -> str:
        return f"{value}.{self._signature(value)}"

    def unsign(self, token: str) -> str | None:
        value, _, signature = token.rpartition(".")
        if not value or not signature:
            return None
        if not hmac.compare_digest(signature, self._signature(value)):
            return None
        return value

    def issue(self) -> tuple[str, str]:
        session = uuid.uuid4().hex
        return session, self.sign(session)


def _lookup(values: Mapping[str, str], name: str) -> str | None:
    value = values.get(name)
    if value is None:
        value = values.get(name.title())
    if value is None:
        return None
    value = value.strip()
    return value or None


def resolve_identity(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    signer: GuestTokenSigner,
    *,
    trust_plan_header: bool = False,
) -> Identity:
    """Return the identity of a request; unreadable signals fall back to a guest."""

    try:
        member_id = _lookup(headers, MEMBER_HEADER)
        if member_id:
            plan = _lookup(headers, PLAN_HEADER) if trust_plan_header else None
            return Identity.member(member_id, plan=plan or DEFAULT_MEMBER_PLAN)
        token = cookies.get(GUEST_COOKIE) or _lookup(headers, GUEST_HEADER)
        session = signer.unsign(token) if token else None
        if token and session is None:
            LOGGER.warning("Ignoring guest token with an invalid signature")
        return Identity.guest(session)
    except Exception as exc:  # identity resolution never fails a request
        LOGGER.warning("Identity resolution failed, treating caller as guest: %s", exc)
        return Identity.guest()
