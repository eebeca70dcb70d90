"""
WorkLog Sentinel - Session Service

Server-tracked session lifecycle: issue, validate, refresh, track
activity, revoke and sweep.

A session is usable only while it is not revoked and now < expires_at.
Activity updates last_activity_at and never extends expiry; refresh is the
only way to extend a session and is capped by max_refresh_count.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sentinel.models.session import Session, SessionActivity
from sentinel.utils.error_handling import (
    RefreshLimitExceeded,
    SessionExpired,
    SessionNotFound,
    SessionRevoked,
)
from sentinel.utils.security import generate_token, hash_token, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedSession:
    """A new session. The token is only available here."""

    token: str
    session: Session


class SessionManager:
    """Session lifecycle backed by the sessions table."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        lifetime_minutes: int = 30,
        max_refresh_count: int = 8,
        max_sessions_per_user: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.lifetime = timedelta(minutes=lifetime_minutes)
        self.max_refresh_count = max_refresh_count
        self.max_sessions_per_user = max_sessions_per_user
        self._clock = clock

    # ===========================================
    # HELPERS
    # ===========================================

    @staticmethod
    async def _load(db: AsyncSession, token: str) -> Optional[Session]:
        result = await db.execute(select(Session).where(Session.token_hash == hash_token(token)))
        return result.scalar_one_or_none()

    @staticmethod
    def _check_usable(session: Optional[Session], now: datetime) -> Session:
        if session is None:
            raise SessionNotFound()
        if session.revoked:
            raise SessionRevoked()
        if now >= session.expires_at:
            raise SessionExpired()
        return session

    # ===========================================
    # LIFECYCLE
    # ===========================================

    async def create_session(
        self,
        owner: str,
        address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        """Issue a session; the oldest live sessions beyond the per-owner cap are revoked."""
        now = self._clock()
        token = generate_token(32)
        session = Session(
            token_hash=hash_token(token),
            owner=owner,
            issued_at=now,
            last_activity_at=now,
            expires_at=now + self.lifetime,
            refresh_count=0,
            revoked=False,
            origin_address=address,
            user_agent=user_agent,
            created_at=now,
        )

        async with self._session_factory() as db:
            result = await db.execute(
                select(Session)
                .where(Session.owner == owner, Session.revoked.is_(False), Session.expires_at > now)
                .order_by(Session.issued_at.asc())
            )
            live = list(result.scalars().all())
            overflow = len(live) - self.max_sessions_per_user + 1
            for old in live[:max(0, overflow)]:
                old.revoked = True
                old.revoked_at = now
                old.revoked_reason = "session_limit"
            if overflow > 0:
                logger.info(f"Revoked {overflow} oldest session(s) for {owner} (session limit)")

            db.add(session)
            await db.commit()

        logger.info(f"Session created for {owner}")
        return IssuedSession(token=token, session=session)

    async def validate_session(self, token: str) -> Session:
        """
        Validate a token and touch last activity.

        Raises:
            SessionNotFound, SessionRevoked, SessionExpired
        """
        async with self._session_factory() as db:
            now = self._clock()
            session = self._check_usable(await self._load(db, token), now)
            session.last_activity_at = now
            await db.commit()
            return session

    async def refresh_session(self, token: str) -> Session:
        """
        Extend expiry from now and count the refresh.

        Raises:
            RefreshLimitExceeded: When refresh_count already reached the cap
            SessionNotFound, SessionRevoked, SessionExpired
        """
        now = self._clock()
        token_hash = hash_token(token)
        async with self._session_factory() as db:
            # Conditional update so concurrent refreshes cannot exceed the cap
            result = await db.execute(
                update(Session)
                .where(
                    Session.token_hash == token_hash,
                    Session.revoked.is_(False),
                    Session.expires_at > now,
                    Session.refresh_count < self.max_refresh_count,
                )
                .values(
                    expires_at=now + self.lifetime,
                    refresh_count=Session.refresh_count + 1,
                    last_activity_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

            session = await self._load(db, token)
            if result.rowcount == 0:
                self._check_usable(session, now)
                raise RefreshLimitExceeded(self.max_refresh_count)

        logger.info(f"Session refreshed for {session.owner} ({session.refresh_count}/{self.max_refresh_count})")
        return session

    async def track_activity(self, token: str, action: str, address: Optional[str] = None) -> SessionActivity:
        """Record an action on a usable session. Expiry is left untouched."""
        async with self._session_factory() as db:
            now = self._clock()
            session = self._check_usable(await self._load(db, token), now)
            suspicious = bool(address and session.origin_address and address != session.origin_address)
            activity = SessionActivity(
                session_id=session.id,
                owner=session.owner,
                action=action,
                source_address=address,
                suspicious=suspicious,
                created_at=now,
            )
            db.add(activity)
            session.last_activity_at = now
            await db.commit()

        if suspicious:
            logger.warning(
                f"Session activity for {session.owner} from {address} differs from origin {session.origin_address}"
            )
        return activity

    async def revoke(self, token: str, reason: str = "logout") -> bool:
        """
        Revoke a session. Returns False if it was already revoked.

        Raises:
            SessionNotFound: Unknown token
        """
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                update(Session)
                .where(Session.token_hash == hash_token(token), Session.revoked.is_(False))
                .values(revoked=True, revoked_at=now, revoked_reason=reason)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 0:
                if await self._load(db, token) is None:
                    raise SessionNotFound()
                return False
        return True

    async def revoke_all_for_owner(self, owner: str, reason: str = "revoked_by_operator") -> int:
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                update(Session)
                .where(Session.owner == owner, Session.revoked.is_(False))
                .values(revoked=True, revoked_at=now, revoked_reason=reason)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.info(f"Revoked {result.rowcount} session(s) for {owner}")
        return result.rowcount

    async def list_sessions(self, owner: str, include_inactive: bool = False) -> List[Session]:
        now = self._clock()
        conditions = [Session.owner == owner]
        if not include_inactive:
            conditions.extend([Session.revoked.is_(False), Session.expires_at > now])
        async with self._session_factory() as db:
            result = await db.execute(
                select(Session).where(*conditions).order_by(Session.issued_at.desc())
            )
            return list(result.scalars().all())

    async def get_activities(self, session_id: UUID) -> List[SessionActivity]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(SessionActivity)
                .where(SessionActivity.session_id == session_id)
                .order_by(SessionActivity.created_at.asc())
            )
            return list(result.scalars().all())

    async def cleanup_expired_sessions(self) -> int:
        """Delete sessions past expiry with their activity. Safe to re-run."""
        now = self._clock()
        expired_ids = select(Session.id).where(Session.expires_at <= now)
        async with self._session_factory() as db:
            await db.execute(
                delete(SessionActivity)
                .where(SessionActivity.session_id.in_(expired_ids))
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                delete(Session)
                .where(Session.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.info(f"Cleaned up {result.rowcount} expired session(s)")
        return result.rowcount
