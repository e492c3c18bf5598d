"""
Persistence boundary for merchants and widget sessions.

``Storage`` defines the operations the services rely on. Two implementations
exist: ``InMemoryStorage`` (default, single process) and ``SqlStorage`` in
``db_models`` (SQLAlchemy). Both guarantee:

- records are returned as copies
- ``update_session`` is a compare-and-set on (status, try_on_count)
- ``increment_quota`` never loses updates under concurrency
- quota fields can only change through ``increment_quota``/``reset_quota``
"""
import asyncio
import copy
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from tryon_widget_server.domain import Merchant, SessionStatus, WidgetSession, utcnow


QUOTA_FIELDS = frozenset({"quota_used", "quota_reset_at"})


class StorageError(Exception):
    """Raised for persistence failures and misuse of the storage API"""


class Storage:
    """Abstract persistence boundary"""

    # Merchants

    async def add_merchant(self, merchant: Merchant) -> Merchant:
        """Insert a merchant; ``merchant.id`` is assigned by the store"""
        raise NotImplementedError

    async def get_merchant(self, merchant_id: int) -> Optional[Merchant]:
        raise NotImplementedError

    async def get_merchant_by_email(self, email: str) -> Optional[Merchant]:
        raise NotImplementedError

    async def get_merchant_by_api_key(self, api_key: str) -> Optional[Merchant]:
        """Exact match against live or test key"""
        raise NotImplementedError

    async def update_merchant(self, merchant_id: int, **changes) -> Optional[Merchant]:
        """Update non-quota merchant fields"""
        raise NotImplementedError

    async def increment_quota(self, merchant_id: int) -> Optional[Merchant]:
        """Atomically add one to ``quota_used``"""
        raise NotImplementedError

    async def reset_quota(
        self,
        merchant_id: int,
        next_reset_at: datetime,
        expected_reset_at: Optional[datetime],
    ) -> Optional[Merchant]:
        """
        Zero ``quota_used`` and move ``quota_reset_at`` forward, only if the
        stored ``quota_reset_at`` still equals ``expected_reset_at``.
        """
        raise NotImplementedError

    # Sessions

    async def add_session(self, session: WidgetSession) -> WidgetSession:
        raise NotImplementedError

    async def get_session(self, session_id: str) -> Optional[WidgetSession]:
        raise NotImplementedError

    async def update_session(
        self,
        session_id: str,
        expected_status: Optional[SessionStatus] = None,
        expected_try_on_count: Optional[int] = None,
        **changes,
    ) -> Optional[WidgetSession]:
        """
        Apply ``changes`` if the stored session matches the expectations.

        Returns the updated session, or None when the session is missing or
        the expectations do not hold.
        """
        raise NotImplementedError

    async def expire_overdue_sessions(self, now: datetime) -> int:
        """Mark pending sessions past ``expires_at`` as expired"""
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    @staticmethod
    def _check_merchant_changes(changes: Dict) -> None:
        forbidden = QUOTA_FIELDS.intersection(changes)
        if forbidden:
            raise StorageError(
                f"Quota fields {sorted(forbidden)} can only be changed by the quota accountant"
            )
        if "id" in changes:
            raise StorageError("Merchant id is immutable")


class InMemoryStorage(Storage):
    """Process-local store guarded by a single asyncio lock"""

    def __init__(self):
        self._merchants: Dict[int, Merchant] = {}
        self._sessions: Dict[str, WidgetSession] = {}
        self._next_merchant_id = 1
        self._lock = asyncio.Lock()

    async def add_merchant(self, merchant: Merchant) -> Merchant:
        async with self._lock:
            for existing in self._merchants.values():
                if existing.email.lower() == merchant.email.lower():
                    raise StorageError(f"Merchant with email {merchant.email} already exists")
                keys = {existing.live_key, existing.test_key}
                if merchant.live_key in keys or merchant.test_key in keys:
                    raise StorageError("API key collision")
            stored = replace(copy.deepcopy(merchant), id=self._next_merchant_id)
            self._next_merchant_id += 1
            self._merchants[stored.id] = stored
            return copy.deepcopy(stored)

    async def get_merchant(self, merchant_id: int) -> Optional[Merchant]:
        merchant = self._merchants.get(merchant_id)
        return copy.deepcopy(merchant) if merchant else None

    async def get_merchant_by_email(self, email: str) -> Optional[Merchant]:
        for merchant in self._merchants.values():
            if merchant.email.lower() == email.lower():
                return copy.deepcopy(merchant)
        return None

    async def get_merchant_by_api_key(self, api_key: str) -> Optional[Merchant]:
        for merchant in self._merchants.values():
            if api_key in (merchant.live_key, merchant.test_key):
                return copy.deepcopy(merchant)
        return None

    async def update_merchant(self, merchant_id: int, **changes) -> Optional[Merchant]:
        self._check_merchant_changes(changes)
        async with self._lock:
            merchant = self._merchants.get(merchant_id)
            if not merchant:
                return None
            updated = replace(merchant, **copy.deepcopy(changes), updated_at=utcnow())
            self._merchants[merchant_id] = updated
            return copy.deepcopy(updated)

    async def increment_quota(self, merchant_id: int) -> Optional[Merchant]:
        async with self._lock:
            merchant = self._merchants.get(merchant_id)
            if not merchant:
                return None
            merchant.quota_used += 1
            merchant.updated_at = utcnow()
            return copy.deepcopy(merchant)

    async def reset_quota(
        self,
        merchant_id: int,
        next_reset_at: datetime,
        expected_reset_at: Optional[datetime],
    ) -> Optional[Merchant]:
        async with self._lock:
            merchant = self._merchants.get(merchant_id)
            if not merchant or merchant.quota_reset_at != expected_reset_at:
                return None
            merchant.quota_used = 0
            merchant.quota_reset_at = next_reset_at
            merchant.updated_at = utcnow()
            return copy.deepcopy(merchant)

    async def add_session(self, session: WidgetSession) -> WidgetSession:
        async with self._lock:
            if session.id in self._sessions:
                raise StorageError(f"Session {session.id} already exists")
            self._sessions[session.id] = copy.deepcopy(session)
            return copy.deepcopy(session)

    async def get_session(self, session_id: str) -> Optional[WidgetSession]:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    async def update_session(
        self,
        session_id: str,
        expected_status: Optional[SessionStatus] = None,
        expected_try_on_count: Optional[int] = None,
        **changes,
    ) -> Optional[WidgetSession]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if not session:
                return None
            if expected_status is not None and session.status != expected_status:
                return None
            if expected_try_on_count is not None and session.try_on_count != expected_try_on_count:
                return None
            updated = replace(session, **changes)
            self._sessions[session_id] = updated
            return copy.deepcopy(updated)

    async def expire_overdue_sessions(self, now: datetime) -> int:
        async with self._lock:
            expired = 0
            for session in self._sessions.values():
                if session.status == SessionStatus.PENDING and now > session.expires_at:
                    session.status = SessionStatus.EXPIRED
                    expired += 1
            return expired

    def list_sessions(self) -> List[WidgetSession]:
        return [copy.deepcopy(s) for s in self._sessions.values()]

    def clear(self) -> None:
        """Remove all records (tests and local tooling)"""
        self._merchants.clear()
        self._sessions.clear()
        self._next_merchant_id = 1
