"""
Session Registry.

Resolves an inbound request to an authentication session:
- `X-Session-Id`: an opaque id the gateway minted after a pairing-code
  registration was approved in the wallet; looked up directly
- `Authorization: Bearer`: validated by wallet introspection and cached
  under the raw token string until the token's `exp` or the cache TTL,
  whichever comes first. The session id is derived from the token, so
  re-validating the same token yields the same id.

Nothing here is persisted beyond the state stores it is given.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
import time
from typing import Callable, Optional, Union

from sacp_gateway.errors import InvalidRequestError, NotFoundError, UnauthorizedError
from sacp_gateway.models import (
    GUEST,
    BearerSession,
    GuestSession,
    PendingRegistration,
    PreRegisteredSession,
    RegistrationResult,
    RegistrationStatus,
)
from sacp_gateway.state import InMemoryStateStore, StateStore
from sacp_gateway.wallet import WalletClient

logger = logging.getLogger(__name__)

REGISTRATION_PERMISSIONS = ["browse", "cart", "purchase"]
# Cents, matching every other amount the gateway handles.
DEFAULT_REGISTRATION_LIMITS = {
    "per_transaction": 10000,
    "daily": 50000,
    "monthly": 100000,
    "currency": "CAD",
}

ResolvedSession = Union[PreRegisteredSession, BearerSession]


def bearer_session_id(token: str) -> str:
    """Stable id for a bearer token; pending step-ups are owned by this id."""
    return "bearer_" + hashlib.sha256(token.encode()).hexdigest()[:16]


def bearer_from_header(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class SessionRegistry:
    def __init__(
        self,
        wallet: WalletClient,
        *,
        sessions: Optional[StateStore[PreRegisteredSession]] = None,
        bearer_sessions: Optional[StateStore[BearerSession]] = None,
        registrations: Optional[StateStore[PendingRegistration]] = None,
        bearer_cache_ttl: int = 300,
        registration_ttl: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.wallet = wallet
        self._clock = clock
        self._sessions = sessions or InMemoryStateStore(clock)
        self._bearer_sessions = bearer_sessions or InMemoryStateStore(clock)
        self._registrations = registrations or InMemoryStateStore(clock)
        self.bearer_cache_ttl = bearer_cache_ttl
        self.registration_ttl = registration_ttl
        self._introspections: dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Pairing-code registration
    # ------------------------------------------------------------------

    async def start_registration(
        self,
        pairing_code: str,
        agent_name: str,
        agent_description: Optional[str] = None,
    ) -> RegistrationResult:
        access = await self.wallet.create_access_request(
            pairing_code=pairing_code,
            agent_name=agent_name,
            agent_description=agent_description or "AI shopping assistant",
            permissions=REGISTRATION_PERMISSIONS,
            spending_limits=DEFAULT_REGISTRATION_LIMITS,
        )
        await self._registrations.set(
            access.request_id,
            PendingRegistration(
                request_id=access.request_id,
                agent_name=agent_name,
                poll_url=access.poll_url,
                expires_at=access.expires_at,
            ),
            expires_at=self._clock() + self.registration_ttl,
        )
        logger.info("Registration %s submitted for agent %s", access.request_id, agent_name)
        return RegistrationResult(
            status=RegistrationStatus.PENDING,
            request_id=access.request_id,
            poll_endpoint=f"/auth/status/{access.request_id}",
            expires_at=access.expires_at,
            message="Registration submitted. User must approve in their wallet app.",
        )

    async def check_registration(self, request_id: str) -> RegistrationResult:
        pending = await self._registrations.get(request_id)
        if pending is None:
            raise NotFoundError("Registration request not found")

        status = await self.wallet.get_access_request_status(request_id, pending.poll_url)

        if status.status == RegistrationStatus.APPROVED.value and status.credentials:
            if await self._registrations.take(request_id) is None:
                raise NotFoundError("Registration request not found")
            now = self._clock()
            session = PreRegisteredSession(
                id=f"sess_{secrets.token_urlsafe(24)}",
                client_id=status.credentials.client_id,
                client_secret=status.credentials.client_secret,
                agent_id=status.agent_id,
                created_at=now,
            )
            await self._sessions.set(session.id, session)
            logger.info("Registration %s approved, agent %s", request_id, status.agent_id)
            return RegistrationResult(
                status=RegistrationStatus.APPROVED,
                session_id=session.id,
                agent_id=status.agent_id,
                permissions=status.permissions,
                spending_limits=status.spending_limits,
                message="Registration approved! Include session_id as X-Session-Id header in all requests.",
            )

        if status.status == RegistrationStatus.REJECTED.value:
            await self._registrations.delete(request_id)
            logger.info("Registration %s rejected", request_id)
            return RegistrationResult(
                status=RegistrationStatus.REJECTED,
                message="User rejected the registration request.",
            )

        return RegistrationResult(
            status=RegistrationStatus.PENDING,
            request_id=request_id,
            time_remaining_seconds=status.time_remaining_seconds,
            message="Waiting for user approval...",
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Optional[PreRegisteredSession]:
        return await self._sessions.get(session_id)

    async def validate_bearer(self, token: str) -> Optional[BearerSession]:
        """Introspect `token` once; concurrent callers share the same call."""
        cached = await self._bearer_sessions.get(token)
        if cached is not None:
            return cached

        inflight = self._introspections.get(token)
        if inflight is None:
            inflight = asyncio.ensure_future(self._introspect(token))
            self._introspections[token] = inflight
            inflight.add_done_callback(lambda _: self._introspections.pop(token, None))
        return await asyncio.shield(inflight)

    async def _introspect(self, token: str) -> Optional[BearerSession]:
        result = await self.wallet.introspect_token(token)
        if not result.active:
            logger.warning("Bearer token rejected by introspection")
            return None

        now = self._clock()
        token_exp = float(result.exp) if result.exp else None
        if token_exp is not None and token_exp <= now:
            return None
        cache_until = now + self.bearer_cache_ttl
        if token_exp is not None:
            cache_until = min(token_exp, cache_until)
        session = BearerSession(
            id=bearer_session_id(token),
            bearer_token=token,
            client_id=result.client_id,
            agent_id=result.sub or result.agent_id,
            scope=result.scope,
            created_at=now,
            expires_at=token_exp,
        )
        await self._bearer_sessions.set(token, session, expires_at=cache_until)
        logger.info("Bearer session %s created for agent %s", session.id, session.agent_id)
        return session

    async def resolve(
        self,
        session_id: Optional[str] = None,
        bearer_token: Optional[str] = None,
    ) -> Optional[ResolvedSession]:
        if session_id:
            session = await self.get_session(session_id)
            if session is not None:
                return session
        if bearer_token:
            return await self.validate_bearer(bearer_token)
        return None

    async def require(
        self,
        session_id: Optional[str] = None,
        bearer_token: Optional[str] = None,
    ) -> ResolvedSession:
        session = await self.resolve(session_id, bearer_token)
        if session is None:
            raise UnauthorizedError(
                "A valid X-Session-Id header or Bearer token is required"
            )
        return session

    async def optional(
        self,
        session_id: Optional[str] = None,
        bearer_token: Optional[str] = None,
    ) -> Union[ResolvedSession, GuestSession]:
        return await self.resolve(session_id, bearer_token) or GUEST

    async def revoke(self, session: ResolvedSession) -> None:
        """Forget a pre-registered session. Bearer tokens are revoked at the wallet."""
        if not isinstance(session, PreRegisteredSession):
            raise InvalidRequestError(
                "Bearer tokens cannot be revoked here; revoke them with the wallet"
            )
        await self._sessions.delete(session.id)
        logger.info("Session %s revoked", session.id)
