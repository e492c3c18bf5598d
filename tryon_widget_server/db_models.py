"""
SQLAlchemy database models and the SQL-backed storage implementation.
"""
from datetime import datetime
from typing import Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from tryon_widget_server.domain import (
    Merchant,
    MerchantStatus,
    Plan,
    ProductSnapshot,
    SessionStatus,
    WidgetSession,
    ensure_utc,
    utcnow,
)
from tryon_widget_server.storage import Storage, StorageError

Base = declarative_base()


class MerchantRecord(Base):
    """Merchant accounts and their widget credentials."""
    __tablename__ = "merchants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    business_name = Column(String(255), nullable=False)
    live_key = Column(String(64), unique=True, nullable=False)
    test_key = Column(String(64), unique=True, nullable=False)
    allowed_domains = Column(JSON, nullable=False, default=list)
    plan = Column(String(50), nullable=False, default=Plan.FREE.value)
    monthly_quota = Column(Integer, nullable=True)
    quota_used = Column(Integer, nullable=False, default=0)
    quota_reset_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(20), nullable=False, default=MerchantStatus.ACTIVE.value)
    webhook_url = Column(String(500), nullable=True)
    webhook_secret = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class WidgetSessionRecord(Base):
    """Widget try-on sessions with their product snapshot."""
    __tablename__ = "widget_sessions"

    id = Column(String(64), primary_key=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True)
    product_id = Column(String(255), nullable=False)
    product_name = Column(String(255), nullable=False)
    product_image = Column(String(2000), nullable=False)
    product_category = Column(String(50), nullable=True)
    product_price = Column(Numeric(10, 2, asdecimal=False), nullable=True)
    product_currency = Column(String(3), nullable=True)
    status = Column(String(20), nullable=False, default=SessionStatus.PENDING.value)
    try_on_count = Column(Integer, nullable=False, default=0)
    max_try_ons = Column(Integer, nullable=False, default=3)
    result_image = Column(String(2000), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    external_user_id = Column(String(255), nullable=True)
    callback_url = Column(String(1000), nullable=True)
    origin_domain = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_widget_sessions_merchant", "merchant_id"),
        Index("idx_widget_sessions_status_expiry", "status", "expires_at"),
        CheckConstraint("try_on_count <= max_try_ons", name="ck_widget_sessions_try_on_ceiling"),
    )


def merchant_from_record(record: MerchantRecord) -> Merchant:
    return Merchant(
        id=record.id,
        email=record.email,
        business_name=record.business_name,
        live_key=record.live_key,
        test_key=record.test_key,
        allowed_domains=list(record.allowed_domains or []),
        plan=Plan(record.plan),
        monthly_quota=record.monthly_quota,
        quota_used=record.quota_used,
        quota_reset_at=ensure_utc(record.quota_reset_at),
        status=MerchantStatus(record.status),
        webhook_url=record.webhook_url,
        webhook_secret=record.webhook_secret,
        created_at=ensure_utc(record.created_at),
        updated_at=ensure_utc(record.updated_at),
    )


def session_from_record(record: WidgetSessionRecord) -> WidgetSession:
    return WidgetSession(
        id=record.id,
        merchant_id=record.merchant_id,
        product=ProductSnapshot(
            id=record.product_id,
            name=record.product_name,
            image=record.product_image,
            category=record.product_category,
            price=record.product_price,
            currency=record.product_currency,
        ),
        status=SessionStatus(record.status),
        try_on_count=record.try_on_count,
        max_try_ons=record.max_try_ons,
        result_image=record.result_image,
        processing_time_ms=record.processing_time_ms,
        error_code=record.error_code,
        error_message=record.error_message,
        external_user_id=record.external_user_id,
        callback_url=record.callback_url,
        origin_domain=record.origin_domain,
        created_at=ensure_utc(record.created_at),
        expires_at=ensure_utc(record.expires_at),
        completed_at=ensure_utc(record.completed_at),
    )


def _merchant_columns(merchant: Merchant) -> dict:
    return {
        "email": merchant.email,
        "business_name": merchant.business_name,
        "live_key": merchant.live_key,
        "test_key": merchant.test_key,
        "allowed_domains": list(merchant.allowed_domains),
        "plan": merchant.plan.value,
        "monthly_quota": merchant.monthly_quota,
        "quota_used": merchant.quota_used,
        "quota_reset_at": merchant.quota_reset_at,
        "status": merchant.status.value,
        "webhook_url": merchant.webhook_url,
        "webhook_secret": merchant.webhook_secret,
        "created_at": merchant.created_at,
        "updated_at": merchant.updated_at,
    }


def _session_columns(session: WidgetSession) -> dict:
    return {
        "id": session.id,
        "merchant_id": session.merchant_id,
        "product_id": session.product.id,
        "product_name": session.product.name,
        "product_image": session.product.image,
        "product_category": session.product.category,
        "product_price": session.product.price,
        "product_currency": session.product.currency,
        "status": session.status.value,
        "try_on_count": session.try_on_count,
        "max_try_ons": session.max_try_ons,
        "result_image": session.result_image,
        "processing_time_ms": session.processing_time_ms,
        "error_code": session.error_code,
        "error_message": session.error_message,
        "external_user_id": session.external_user_id,
        "callback_url": session.callback_url,
        "origin_domain": session.origin_domain,
        "created_at": session.created_at,
        "expires_at": session.expires_at,
        "completed_at": session.completed_at,
    }


def _to_column_values(changes: dict) -> dict:
    """Convert enum values in a change set to their stored strings"""
    values = {}
    for key, value in changes.items():
        if isinstance(value, (SessionStatus, MerchantStatus, Plan)):
            value = value.value
        elif key == "allowed_domains":
            value = list(value)
        values[key] = value
    return values


def create_db_engine(database_url: str, echo: bool = False):
    """Create an engine; in-memory SQLite shares one connection across threads"""
    if database_url == "sqlite://" or (database_url.startswith("sqlite") and ":memory:" in database_url):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class SqlStorage(Storage):
    """
    SQLAlchemy-backed storage.

    Blocking database calls run in the thread pool. Compare-and-set updates
    are single conditional ``UPDATE`` statements, so they stay atomic across
    processes sharing the database.
    """

    def __init__(self, database_url: str, echo: bool = False, create_tables: bool = False):
        self.engine = create_db_engine(database_url, echo=echo)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(self.engine)

    # Merchants

    async def add_merchant(self, merchant: Merchant) -> Merchant:
        def _add():
            with self._session_factory() as db:
                record = MerchantRecord(**_merchant_columns(merchant))
                db.add(record)
                try:
                    db.commit()
                except IntegrityError as e:
                    db.rollback()
                    raise StorageError(f"Could not insert merchant: {e.orig}") from e
                return merchant_from_record(record)

        return await run_in_threadpool(_add)

    async def get_merchant(self, merchant_id: int) -> Optional[Merchant]:
        return await run_in_threadpool(
            self._fetch_merchant, MerchantRecord.id == merchant_id
        )

    async def get_merchant_by_email(self, email: str) -> Optional[Merchant]:
        return await run_in_threadpool(
            self._fetch_merchant, MerchantRecord.email == email
        )

    async def get_merchant_by_api_key(self, api_key: str) -> Optional[Merchant]:
        return await run_in_threadpool(
            self._fetch_merchant,
            or_(MerchantRecord.live_key == api_key, MerchantRecord.test_key == api_key),
        )

    def _fetch_merchant(self, condition) -> Optional[Merchant]:
        with self._session_factory() as db:
            record = db.execute(select(MerchantRecord).where(condition)).scalar_one_or_none()
            return merchant_from_record(record) if record else None

    async def update_merchant(self, merchant_id: int, **changes) -> Optional[Merchant]:
        self._check_merchant_changes(changes)
        values = _to_column_values(changes)
        values["updated_at"] = utcnow()
        return await run_in_threadpool(
            self._update_merchant_where, merchant_id, values, None
        )

    async def increment_quota(self, merchant_id: int) -> Optional[Merchant]:
        values = {"quota_used": MerchantRecord.quota_used + 1, "updated_at": utcnow()}
        return await run_in_threadpool(
            self._update_merchant_where, merchant_id, values, None
        )

    async def reset_quota(
        self,
        merchant_id: int,
        next_reset_at: datetime,
        expected_reset_at: Optional[datetime],
    ) -> Optional[Merchant]:
        if expected_reset_at is None:
            condition = MerchantRecord.quota_reset_at.is_(None)
        else:
            condition = MerchantRecord.quota_reset_at == expected_reset_at
        values = {"quota_used": 0, "quota_reset_at": next_reset_at, "updated_at": utcnow()}
        return await run_in_threadpool(
            self._update_merchant_where, merchant_id, values, condition
        )

    def _update_merchant_where(self, merchant_id: int, values: dict, condition) -> Optional[Merchant]:
        with self._session_factory() as db:
            stmt = update(MerchantRecord).where(MerchantRecord.id == merchant_id)
            if condition is not None:
                stmt = stmt.where(condition)
            result = db.execute(stmt.values(**values))
            if result.rowcount != 1:
                db.rollback()
                return None
            db.commit()
            record = db.get(MerchantRecord, merchant_id)
            return merchant_from_record(record)

    # Sessions

    async def add_session(self, session: WidgetSession) -> WidgetSession:
        def _add():
            with self._session_factory() as db:
                record = WidgetSessionRecord(**_session_columns(session))
                db.add(record)
                try:
                    db.commit()
                except IntegrityError as e:
                    db.rollback()
                    raise StorageError(f"Could not insert session: {e.orig}") from e
                return session_from_record(record)

        return await run_in_threadpool(_add)

    async def get_session(self, session_id: str) -> Optional[WidgetSession]:
        def _get():
            with self._session_factory() as db:
                record = db.get(WidgetSessionRecord, session_id)
                return session_from_record(record) if record else None

        return await run_in_threadpool(_get)

    async def update_session(
        self,
        session_id: str,
        expected_status: Optional[SessionStatus] = None,
        expected_try_on_count: Optional[int] = None,
        **changes,
    ) -> Optional[WidgetSession]:
        values = _to_column_values(changes)

        def _update():
            with self._session_factory() as db:
                stmt = update(WidgetSessionRecord).where(WidgetSessionRecord.id == session_id)
                if expected_status is not None:
                    stmt = stmt.where(WidgetSessionRecord.status == expected_status.value)
                if expected_try_on_count is not None:
                    stmt = stmt.where(WidgetSessionRecord.try_on_count == expected_try_on_count)
                result = db.execute(stmt.values(**values))
                if result.rowcount != 1:
                    db.rollback()
                    return None
                db.commit()
                record = db.get(WidgetSessionRecord, session_id)
                return session_from_record(record)

        return await run_in_threadpool(_update)

    async def expire_overdue_sessions(self, now: datetime) -> int:
        def _expire():
            with self._session_factory() as db:
                result = db.execute(
                    update(WidgetSessionRecord)
                    .where(WidgetSessionRecord.status == SessionStatus.PENDING.value)
                    .where(WidgetSessionRecord.expires_at < now)
                    .values(status=SessionStatus.EXPIRED.value)
                )
                db.commit()
                return result.rowcount

        return await run_in_threadpool(_expire)

    async def ping(self) -> bool:
        def _ping():
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return True

        return await run_in_threadpool(_ping)

    async def close(self) -> None:
        self.engine.dispose()
