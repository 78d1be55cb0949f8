from sqlalchemy import (
    create_engine, event, Column, String, Integer, DateTime, JSON, ForeignKey,
    Enum as SQLEnum, select, update, func, literal, extract, and_, or_,
)
from sqlalchemy.orm import declarative_base, relationship, selectinload
from sqlalchemy.orm import sessionmaker
import os
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from ..models.job import (
    Job, JobItem, JobStatus, ItemStatus, ItemCounts, JobPage, ItemPage,
)
from ..models.errors import JobNotFoundError, JobItemNotFoundError
from ..utils.time import utc_now

Base = declarative_base()

MAX_PAGE_SIZE = 100


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class JobModel(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=True, index=True)
    type = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(JobStatus, values_callable=_enum_values), nullable=False,
                    default=JobStatus.QUEUED, index=True)
    input = Column(JSON(none_as_null=True), nullable=True)
    output = Column(JSON(none_as_null=True), nullable=True)
    error = Column(JSON(none_as_null=True), nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    progress_details = Column(JSON(none_as_null=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    timeout_seconds = Column(Integer, nullable=False, default=300)
    next_run_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    items = relationship(
        "ItemModel",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ItemModel.position",
    )


class ItemModel(Base):
    __tablename__ = "job_items"

    id = Column(String, primary_key=True)
    job_id = Column(String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    status = Column(SQLEnum(ItemStatus, values_callable=_enum_values), nullable=False,
                    default=ItemStatus.PENDING, index=True)
    input = Column(JSON(none_as_null=True), nullable=True)
    output = Column(JSON(none_as_null=True), nullable=True)
    error = Column(JSON(none_as_null=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime, nullable=True)

    job = relationship("JobModel", back_populates="items")


JOB_COLUMNS = [column.name for column in JobModel.__table__.columns]
UPDATABLE_JOB_FIELDS = {
    "status", "output", "error", "progress", "progress_details", "attempts",
    "next_run_at", "started_at", "completed_at",
}
UPDATABLE_ITEM_FIELDS = {"status", "output", "error", "attempts", "completed_at"}


def _job_from_row(row: JobModel, with_items: bool = False) -> Job:
    data = {name: getattr(row, name) for name in JOB_COLUMNS}
    if with_items:
        data["items"] = [JobItem.model_validate(item) for item in row.items]
    return Job.model_validate(data)


def _check_fields(changes: Dict[str, Any], allowed: set) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unknown or read-only fields: {', '.join(sorted(unknown))}")


def _page_size(limit: int) -> int:
    return max(1, min(MAX_PAGE_SIZE, int(limit)))


def _sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def default_db_path() -> str:
    home = os.environ.get("ACTIONQUEUE_HOME", os.path.join(os.path.expanduser("~"), ".actionqueue"))
    os.makedirs(home, exist_ok=True)
    return os.path.join(home, "jobs.db")


class Storage:
    """Job and item persistence.

    Every public method opens its own session, so each call is atomic on its
    own. Sequences of calls are not wrapped in a shared transaction.
    """

    def __init__(self, db_path: str = None):
        if not db_path:
            db_path = default_db_path()

        if "://" in db_path:
            url = db_path
        else:
            url = f"sqlite:///{db_path}"

        if url.startswith("sqlite"):
            # Sessions are opened from worker threads (asyncio.to_thread)
            self.engine = create_engine(url, connect_args={"timeout": 30, "check_same_thread": False})
            event.listen(self.engine, "connect", _sqlite_pragmas)
        else:
            self.engine = create_engine(url, pool_pre_ping=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def __del__(self):
        if hasattr(self, 'engine'):
            self.engine.dispose()

    # ---------- Jobs ----------

    def _new_job_row(self, job_data: Dict[str, Any]) -> JobModel:
        return JobModel(
            id=job_data.get("id") or str(uuid.uuid4()),
            tenant_id=job_data.get("tenant_id"),
            type=job_data["type"],
            status=JobStatus.QUEUED,
            input=job_data.get("input"),
            progress=0,
            attempts=0,
            max_attempts=job_data.get("max_attempts") or 3,
            timeout_seconds=job_data.get("timeout_seconds") or 300,
        )

    def add_job(self, job_data: dict) -> Job:
        session = self.Session()
        try:
            job = self._new_job_row(job_data)
            session.add(job)
            session.commit()
            return _job_from_row(job)
        finally:
            session.close()

    def add_job_with_items(self, job_data: dict, items: List[dict]) -> Job:
        """Create a job and its items in one transaction. Items keep their submission order."""
        session = self.Session()
        try:
            job = self._new_job_row(job_data)
            now = utc_now()
            job.items = [
                ItemModel(
                    id=str(uuid.uuid4()),
                    position=position,
                    status=ItemStatus.PENDING,
                    input=(item or {}).get("input"),
                    attempts=0,
                    created_at=now,
                )
                for position, item in enumerate(items)
            ]
            session.add(job)
            session.commit()
            return _job_from_row(job, with_items=True)
        finally:
            session.close()

    def get_job(self, job_id: str, with_items: bool = False) -> Optional[Job]:
        session = self.Session()
        try:
            query = select(JobModel).where(JobModel.id == job_id)
            if with_items:
                query = query.options(selectinload(JobModel.items))
            row = session.execute(query).scalar_one_or_none()
            return _job_from_row(row, with_items=with_items) if row else None
        finally:
            session.close()

    def get_job_for_tenant(self, job_id: str, tenant_id: str) -> Optional[Job]:
        session = self.Session()
        try:
            row = session.execute(
                select(JobModel).where(JobModel.id == job_id, JobModel.tenant_id == tenant_id)
            ).scalar_one_or_none()
            return _job_from_row(row) if row else None
        finally:
            session.close()

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def update_job(self, job_id: str, updates: dict) -> Job:
        _check_fields(updates, UPDATABLE_JOB_FIELDS)
        session = self.Session()
        try:
            job = session.get(JobModel, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            for key, value in updates.items():
                setattr(job, key, value)
            session.commit()
            return _job_from_row(job)
        finally:
            session.close()

    def update_job_if_status(self, job_id: str, statuses: Iterable[JobStatus], updates: dict) -> bool:
        """Apply ``updates`` only while the job is in one of ``statuses``.

        The status check is part of the UPDATE, so a concurrent transition
        (a cancel, a timeout) is never overwritten. Returns False when no row
        matched.
        """
        _check_fields(updates, UPDATABLE_JOB_FIELDS)
        stmt = (
            update(JobModel)
            .where(JobModel.id == job_id)
            .where(JobModel.status.in_(list(statuses)))
            .values(**updates, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        session = self.Session()
        try:
            result = session.execute(stmt)
            session.commit()
            return bool(result.rowcount)
        finally:
            session.close()

    def delete_job(self, job_id: str) -> None:
        session = self.Session()
        try:
            job = session.get(JobModel, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            session.delete(job)
            session.commit()
        finally:
            session.close()

    def list_jobs(
        self,
        tenant_id: Optional[str] = None,
        job_type: Optional[str] = None,
        status: Optional[JobStatus] = None,
        cursor: Optional[str] = None,
        limit: int = 20,
    ) -> JobPage:
        """Newest jobs first. ``cursor`` is the id of the last job already seen."""
        limit = _page_size(limit)
        session = self.Session()
        try:
            filters = []
            if tenant_id:
                filters.append(JobModel.tenant_id == tenant_id)
            if job_type:
                filters.append(JobModel.type == job_type)
            if status:
                filters.append(JobModel.status == JobStatus(status))

            total = session.execute(
                select(func.count()).select_from(JobModel).where(*filters)
            ).scalar_one()

            query = select(JobModel).where(*filters)
            if cursor:
                anchor = session.get(JobModel, cursor)
                if anchor is None:
                    raise JobNotFoundError(cursor)
                query = query.where(or_(
                    JobModel.created_at < anchor.created_at,
                    and_(JobModel.created_at == anchor.created_at, JobModel.id < anchor.id),
                ))
            rows = session.execute(
                query.order_by(JobModel.created_at.desc(), JobModel.id.desc()).limit(limit + 1)
            ).scalars().all()

            has_more = len(rows) > limit
            rows = rows[:limit]
            return JobPage(
                jobs=[_job_from_row(row) for row in rows],
                next_cursor=rows[-1].id if has_more and rows else None,
                total_count=total,
            )
        finally:
            session.close()

    def count_jobs_by_status(self) -> Dict[JobStatus, int]:
        session = self.Session()
        try:
            rows = session.execute(
                select(JobModel.status, func.count()).group_by(JobModel.status)
            ).all()
            counts = {status: 0 for status in JobStatus}
            for status, count in rows:
                counts[JobStatus(status)] = count
            return counts
        finally:
            session.close()

    def count_running_by_type(self, job_type: str) -> int:
        session = self.Session()
        try:
            return session.execute(
                select(func.count()).select_from(JobModel).where(
                    JobModel.type == job_type, JobModel.status == JobStatus.RUNNING
                )
            ).scalar_one()
        finally:
            session.close()

    # ---------- Queue primitives ----------

    def claim_next(self, job_type: Optional[str] = None, limit: int = 10) -> List[Job]:
        """Atomically move up to ``limit`` eligible jobs from queued to running.

        One UPDATE statement selects the candidates (oldest first, skipping rows
        another claimer has locked) and marks them running, so a job is never
        handed to two claimers. On SQLite the lock clause is dropped and the
        database write lock serializes the statement instead.
        """
        now = utc_now()
        candidates = (
            select(JobModel.id)
            .where(JobModel.status == JobStatus.QUEUED)
            .where(or_(JobModel.next_run_at.is_(None), JobModel.next_run_at <= now))
        )
        if job_type:
            candidates = candidates.where(JobModel.type == job_type)
        candidates = (
            candidates.order_by(JobModel.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )

        claim = (
            update(JobModel)
            .where(JobModel.id.in_(candidates))
            .where(JobModel.status == JobStatus.QUEUED)
            .values(
                status=JobStatus.RUNNING,
                started_at=now,
                attempts=JobModel.attempts + 1,
                updated_at=now,
            )
            .returning(JobModel.id)
            .execution_options(synchronize_session=False)
        )

        session = self.Session()
        try:
            claimed_ids = list(session.execute(claim).scalars())
            session.commit()
            if not claimed_ids:
                return []
            rows = session.execute(
                select(JobModel)
                .options(selectinload(JobModel.items))
                .where(JobModel.id.in_(claimed_ids))
                .order_by(JobModel.created_at.asc())
            ).scalars().all()
            return [_job_from_row(row, with_items=True) for row in rows]
        finally:
            session.close()

    def _elapsed_seconds(self, now: datetime):
        now_param = literal(now, DateTime())
        if self.engine.dialect.name == "sqlite":
            return (func.julianday(now_param) - func.julianday(JobModel.started_at)) * 86400.0
        return extract("epoch", now_param - JobModel.started_at)

    def detect_and_fail_timed_out(self) -> int:
        """Fail every running job whose started_at + timeout_seconds is in the past."""
        now = utc_now()
        stmt = (
            update(JobModel)
            .where(JobModel.status == JobStatus.RUNNING)
            .where(JobModel.started_at.isnot(None))
            .where(self._elapsed_seconds(now) > JobModel.timeout_seconds)
            .values(
                status=JobStatus.FAILED,
                error={"code": "JOB_TIMEOUT", "message": "Job timed out while running"},
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        session = self.Session()
        try:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount or 0
        finally:
            session.close()

    # ---------- Items ----------

    def get_item(self, item_id: str) -> Optional[JobItem]:
        session = self.Session()
        try:
            row = session.get(ItemModel, item_id)
            return JobItem.model_validate(row) if row else None
        finally:
            session.close()

    def update_item(self, item_id: str, updates: dict) -> JobItem:
        _check_fields(updates, UPDATABLE_ITEM_FIELDS)
        session = self.Session()
        try:
            item = session.get(ItemModel, item_id)
            if item is None:
                raise JobItemNotFoundError(item_id)
            for key, value in updates.items():
                setattr(item, key, value)
            session.commit()
            return JobItem.model_validate(item)
        finally:
            session.close()

    def batch_update_items(self, updates: Iterable[Tuple[str, dict]]) -> None:
        """Apply several item updates in one transaction; nothing is written if any id is unknown."""
        session = self.Session()
        try:
            for item_id, changes in updates:
                _check_fields(changes, UPDATABLE_ITEM_FIELDS)
                item = session.get(ItemModel, item_id)
                if item is None:
                    raise JobItemNotFoundError(item_id)
                for key, value in changes.items():
                    setattr(item, key, value)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def find_pending_items(self, job_id: str, limit: int = 100) -> List[JobItem]:
        session = self.Session()
        try:
            rows = session.execute(
                select(ItemModel)
                .where(ItemModel.job_id == job_id, ItemModel.status == ItemStatus.PENDING)
                .order_by(ItemModel.position.asc())
                .limit(limit)
            ).scalars().all()
            return [JobItem.model_validate(row) for row in rows]
        finally:
            session.close()

    def list_items(
        self,
        job_id: str,
        status: Optional[ItemStatus] = None,
        cursor: Optional[str] = None,
        limit: int = 20,
    ) -> ItemPage:
        """Items of one job in creation order. ``cursor`` is the id of the last item already seen."""
        limit = _page_size(limit)
        session = self.Session()
        try:
            filters = [ItemModel.job_id == job_id]
            if status:
                filters.append(ItemModel.status == ItemStatus(status))

            total = session.execute(
                select(func.count()).select_from(ItemModel).where(*filters)
            ).scalar_one()

            query = select(ItemModel).where(*filters)
            if cursor:
                anchor = session.get(ItemModel, cursor)
                if anchor is None:
                    raise JobItemNotFoundError(cursor)
                query = query.where(ItemModel.position > anchor.position)
            rows = session.execute(
                query.order_by(ItemModel.position.asc()).limit(limit + 1)
            ).scalars().all()

            has_more = len(rows) > limit
            rows = rows[:limit]
            return ItemPage(
                items=[JobItem.model_validate(row) for row in rows],
                next_cursor=rows[-1].id if has_more and rows else None,
                total_count=total,
            )
        finally:
            session.close()

    def count_items_by_status(self, job_id: str) -> ItemCounts:
        session = self.Session()
        try:
            rows = session.execute(
                select(ItemModel.status, func.count())
                .where(ItemModel.job_id == job_id)
                .group_by(ItemModel.status)
            ).all()
            counts = ItemCounts()
            for status, count in rows:
                counts.total += count
                setattr(counts, ItemStatus(status).value, count)
            return counts
        finally:
            session.close()
