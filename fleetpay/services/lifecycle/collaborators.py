"""External collaborators consumed by the transition authority.

Each is a small protocol with one HTTP/header-backed adapter. Tests swap in
in-memory fakes.
"""

from collections.abc import Mapping
from typing import Any, Protocol

import httpx

from fleetpay.common.errors import CollaboratorUnavailable, Unauthenticated
from fleetpay.common.logging import logger
from fleetpay.common.schemas import SYSTEM_ACTOR, Actor
from fleetpay.common.state_machine import ActorRole


class IdentityProvider(Protocol):
    def resolve_actor(self, headers: Mapping[str, str]) -> Actor: ...


class PhotoStore(Protocol):
    def has_photo(self, resource_id: str, phase: str) -> bool: ...


class Notifier(Protocol):
    def notify(self, recipient: str, template: str, data: dict[str, Any]) -> None: ...


class TrustedHeaderIdentity:
    """Actor forwarded by the authenticating gateway.

    The gateway verifies the end-user session and forwards `x-actor-id` and
    `x-actor-role`; the shared `x-api-key` proves the request came through it.
    """

    ROLES = frozenset(role.value for role in ActorRole)

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def verify_key(self, api_key: str | None) -> None:
        if not api_key or api_key != self.api_key:
            raise Unauthenticated("invalid API key")

    def resolve_actor(self, headers: Mapping[str, str]) -> Actor:
        self.verify_key(headers.get("x-api-key"))
        role = (headers.get("x-actor-role") or "").strip().lower()
        if role not in self.ROLES:
            raise Unauthenticated("missing or unknown actor role")
        if role == ActorRole.SYSTEM.value:
            return SYSTEM_ACTOR
        actor_id = (headers.get("x-actor-id") or "").strip()
        if not actor_id:
            raise Unauthenticated("missing actor id")
        return Actor(actor_id=actor_id, role=role)


class HttpPhotoStore:
    def __init__(self, base_url: str, timeout_seconds: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def has_photo(self, resource_id: str, phase: str) -> bool:
        url = f"{self.base_url}/resources/{resource_id}/photos/{phase}"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                resp = client.get(url)
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable(f"photo store unreachable: {exc}") from exc
        if resp.status_code == 404:
            return False
        if resp.status_code >= 400:
            raise CollaboratorUnavailable(f"photo store lookup failed (status={resp.status_code})")
        return bool(resp.json().get("present", False))


class HttpNotifier:
    def __init__(self, base_url: str, timeout_seconds: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def notify(self, recipient: str, template: str, data: dict[str, Any]) -> None:
        with httpx.Client(timeout=self.timeout_seconds) as client:
            resp = client.post(
                f"{self.base_url}/notifications",
                json={"recipient": recipient, "template": template, "data": data},
            )
        resp.raise_for_status()
        logger.info("notification_sent template=%s recipient=%s", template, recipient)
