import functools
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import (
    JSON, BigInteger, Column, DateTime, Index, Integer, MetaData, String, Table, Text,
    UniqueConstraint, cast, delete, func, or_, select, type_coerce, update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from src.domain.exceptions import StoreError
from src.domain.models import (
    IssueEntity, LabelEntity, RepoConfig, SyncRecord, SyncStatus, SyncType, repo_key,
)

logger = logging.getLogger(__name__)

# Rows per INSERT statement; keeps SQLite under its bound-parameter limit.
UPSERT_BATCH_SIZE = 50
PLACEHOLDER_LABEL_COLOR = "gray"

LabelNames = JSON().with_variant(JSONB(), "postgresql")

# SQLAlchemy core Table definitions
metadata = MetaData()
repo_configs_table = Table(
    'repo_configs', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('repo_key', String, nullable=False, unique=True),
    Column('owner', String, nullable=False),
    Column('repo', String, nullable=False),
    Column('token', Text, nullable=False),
    Column('issues_per_page', Integer, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
)
issues_table = Table(
    'issues', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner', String, nullable=False),
    Column('repo', String, nullable=False),
    Column('issue_number', Integer, nullable=False),
    Column('title', Text, nullable=False),
    Column('body', Text, nullable=False, default=""),
    Column('state', String, nullable=False),
    Column('labels', LabelNames, nullable=False),
    Column('github_created_at', DateTime(timezone=True)),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('owner', 'repo', 'issue_number', name='uq_issues_owner_repo_number'),
)
labels_table = Table(
    'labels', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('github_id', BigInteger, nullable=False, default=0),
    Column('owner', String, nullable=False),
    Column('repo', String, nullable=False),
    Column('name', String, nullable=False),
    Column('color', String, nullable=False),
    Column('description', Text),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('owner', 'repo', 'name', name='uq_labels_owner_repo_name'),
)
sync_history_table = Table(
    'sync_history', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner', String, nullable=False),
    Column('repo', String, nullable=False),
    Column('status', String, nullable=False),
    Column('sync_type', String, nullable=False),
    Column('issues_synced', Integer, nullable=False, default=0),
    Column('error_message', Text),
    Column('last_sync_at', DateTime(timezone=True), nullable=False),
    Index('ix_sync_history_owner_repo_last_sync_at', 'owner', 'repo', 'last_sync_at'),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything this store writes is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _norm(owner: str, repo: str) -> Tuple[str, str]:
    return owner.strip().lower(), repo.strip().lower()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _store_operation(func):
    """Translates SQLAlchemy failures into StoreError at the repository boundary."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Database operation '{func.__name__}' failed: {e}")
            raise StoreError(f"Database operation '{func.__name__}' failed: {e}") from e
    return wrapper


class MirrorRepository:
    """
    Repository class for the mirrored issues, labels, configurations and sync history.

    Issues and labels are written with INSERT ... ON CONFLICT DO UPDATE keyed on their
    identity columns, so every write path (sync, webhook, manual edit) keeps them unique.
    Owner and repo are stored lower-cased.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def _insert(self, table: Table):
        if self.dialect_name == "postgresql":
            return postgresql.insert(table)
        if self.dialect_name == "sqlite":
            return sqlite.insert(table)
        raise StoreError(f"Unsupported database dialect for upserts: {self.dialect_name}")

    def _labels_contain(self, name: str):
        if self.dialect_name == "postgresql":
            return type_coerce(issues_table.c.labels, JSONB).contains([name])
        # Label names are stored as a JSON array of strings; match the quoted element.
        pattern = "%" + _escape_like(json.dumps(name)) + "%"
        return cast(issues_table.c.labels, String).like(pattern, escape="\\")

    @_store_operation
    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    # Configurations

    @_store_operation
    async def save_config(
        self, owner: str, repo: str, encrypted_token: str, page_size: int, now: Optional[datetime] = None
    ) -> RepoConfig:
        now = now or utcnow()
        async with self.engine.begin() as conn:
            stmt = self._insert(repo_configs_table).values(
                repo_key=repo_key(owner, repo),
                owner=owner,
                repo=repo,
                token=encrypted_token,
                issues_per_page=page_size,
                created_at=now,
                updated_at=now,
            )
            # A re-save supersedes the previous row; created_at is kept.
            await conn.execute(stmt.on_conflict_do_update(
                index_elements=['repo_key'],
                set_={
                    'owner': stmt.excluded.owner,
                    'repo': stmt.excluded.repo,
                    'token': stmt.excluded.token,
                    'issues_per_page': stmt.excluded.issues_per_page,
                    'updated_at': stmt.excluded.updated_at,
                },
            ))
        return RepoConfig(owner=owner, repo=repo, credential=encrypted_token, page_size=page_size)

    @_store_operation
    async def get_config(self, owner: str, repo: str) -> Optional[RepoConfig]:
        query = select(repo_configs_table).where(repo_configs_table.c.repo_key == repo_key(owner, repo))
        async with self.engine.connect() as conn:
            row = (await conn.execute(query)).mappings().first()
        return self._row_to_config(row) if row else None

    @_store_operation
    async def latest_config(self) -> Optional[RepoConfig]:
        query = (
            select(repo_configs_table)
            .order_by(repo_configs_table.c.updated_at.desc(), repo_configs_table.c.id.desc())
            .limit(1)
        )
        async with self.engine.connect() as conn:
            row = (await conn.execute(query)).mappings().first()
        return self._row_to_config(row) if row else None

    @staticmethod
    def _row_to_config(row) -> RepoConfig:
        return RepoConfig(
            owner=row['owner'],
            repo=row['repo'],
            credential=row['token'],
            page_size=row['issues_per_page'],
        )

    # Issues

    def _issue_values(self, owner: str, repo: str, issue: IssueEntity, now: datetime) -> Dict:
        return {
            'owner': owner,
            'repo': repo,
            'issue_number': issue.number,
            'title': issue.title,
            'body': issue.body or "",
            'state': issue.state,
            'labels': issue.label_names,
            'github_created_at': as_utc(issue.upstream_created_at),
            'created_at': now,
            'updated_at': now,
        }

    @_store_operation
    async def bulk_upsert_issues(
        self, owner: str, repo: str, issues: Sequence[IssueEntity], now: Optional[datetime] = None
    ) -> None:
        """
        Upserts issues in a single transaction.

        Rows whose content is unchanged are left alone (updated_at included), which makes
        re-applying the same payload a no-op. created_at is never overwritten.
        """
        if not issues:
            return  # No issues to upsert

        owner, repo = _norm(owner, repo)
        now = now or utcnow()
        values = [self._issue_values(owner, repo, issue, now) for issue in issues]

        async with self.engine.begin() as conn:
            for start in range(0, len(values), UPSERT_BATCH_SIZE):
                stmt = self._insert(issues_table).values(values[start:start + UPSERT_BATCH_SIZE])
                upsert_stmt = stmt.on_conflict_do_update(
                    index_elements=['owner', 'repo', 'issue_number'],
                    set_={
                        'title': stmt.excluded.title,
                        'body': stmt.excluded.body,
                        'state': stmt.excluded.state,
                        'labels': stmt.excluded.labels,
                        'github_created_at': stmt.excluded.github_created_at,
                        'updated_at': stmt.excluded.updated_at,
                    },
                    where=(
                        issues_table.c.title.is_distinct_from(stmt.excluded.title)
                        | issues_table.c.body.is_distinct_from(stmt.excluded.body)
                        | issues_table.c.state.is_distinct_from(stmt.excluded.state)
                        | issues_table.c.labels.is_distinct_from(stmt.excluded.labels)
                        | issues_table.c.github_created_at.is_distinct_from(stmt.excluded.github_created_at)
                    ),
                )
                await conn.execute(upsert_stmt)

    async def upsert_issue(self, owner: str, repo: str, issue: IssueEntity, now: Optional[datetime] = None) -> None:
        await self.bulk_upsert_issues(owner, repo, [issue], now=now)

    @_store_operation
    async def get_issue(self, owner: str, repo: str, number: int) -> Optional[IssueEntity]:
        owner, repo = _norm(owner, repo)
        query = select(issues_table).where(
            issues_table.c.owner == owner,
            issues_table.c.repo == repo,
            issues_table.c.issue_number == number,
        )
        async with self.engine.connect() as conn:
            row = (await conn.execute(query)).mappings().first()
            if row is None:
                return None
            labels_by_name = await self._labels_by_name(conn, owner, repo)
        return self._row_to_issue(row, labels_by_name)

    @_store_operation
    async def list_issues(
        self,
        owner: str,
        repo: str,
        page: int = 1,
        page_size: int = 10,
        label_filter: Optional[Sequence[str]] = None,
    ) -> Tuple[List[IssueEntity], int]:
        """Returns one page of issues, newest upstream first, and the total matching count."""
        owner, repo = _norm(owner, repo)
        conditions = [issues_table.c.owner == owner, issues_table.c.repo == repo]
        for name in label_filter or []:
            conditions.append(self._labels_contain(name))

        page = max(page, 1)
        query = (
            select(issues_table)
            .where(*conditions)
            .order_by(issues_table.c.github_created_at.desc().nulls_last(), issues_table.c.issue_number.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        count_query = select(func.count()).select_from(issues_table).where(*conditions)

        async with self.engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
            total = (await conn.execute(count_query)).scalar_one()
            labels_by_name = await self._labels_by_name(conn, owner, repo)

        return [self._row_to_issue(row, labels_by_name) for row in rows], total

    @_store_operation
    async def count_issues(self, owner: str, repo: str) -> int:
        owner, repo = _norm(owner, repo)
        query = select(func.count()).select_from(issues_table).where(
            issues_table.c.owner == owner, issues_table.c.repo == repo
        )
        async with self.engine.connect() as conn:
            return (await conn.execute(query)).scalar_one()

    @_store_operation
    async def table_counts(self) -> Dict[str, int]:
        """Row counts of the mirrored tables; doubles as a connectivity check."""
        tables = {"configs": repo_configs_table, "issues": issues_table, "labels": labels_table}
        counts = {}
        async with self.engine.connect() as conn:
            for name, table in tables.items():
                counts[name] = (await conn.execute(select(func.count()).select_from(table))).scalar_one()
        return counts

    @_store_operation
    async def touch_issues_with_labels(
        self, owner: str, repo: str, label_names: Iterable[str], now: Optional[datetime] = None
    ) -> int:
        """Bumps updated_at on every issue tagged with any of the given label names."""
        names = [name for name in label_names if name]
        if not names:
            return 0

        owner, repo = _norm(owner, repo)
        stmt = (
            update(issues_table)
            .where(
                issues_table.c.owner == owner,
                issues_table.c.repo == repo,
                or_(*[self._labels_contain(name) for name in names]),
            )
            .values(updated_at=now or utcnow())
        )
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
            return result.rowcount

    @staticmethod
    def _row_to_issue(row, labels_by_name: Dict[str, LabelEntity]) -> IssueEntity:
        labels = [
            labels_by_name.get(name) or LabelEntity(id=0, name=name, color=PLACEHOLDER_LABEL_COLOR)
            for name in (row['labels'] or [])
        ]
        return IssueEntity(
            number=row['issue_number'],
            title=row['title'],
            body=row['body'] or "",
            state=row['state'],
            labels=labels,
            created_at=as_utc(row['created_at']),
            upstream_created_at=as_utc(row['github_created_at']),
            updated_at=as_utc(row['updated_at']),
        )

    # Labels

    @_store_operation
    async def upsert_label(self, owner: str, repo: str, label: LabelEntity, now: Optional[datetime] = None) -> None:
        owner, repo = _norm(owner, repo)
        async with self.engine.begin() as conn:
            stmt = self._insert(labels_table).values(
                github_id=label.id,
                owner=owner,
                repo=repo,
                name=label.name,
                color=label.color,
                description=label.description,
                updated_at=now or utcnow(),
            )
            await conn.execute(stmt.on_conflict_do_update(
                index_elements=['owner', 'repo', 'name'],
                set_={
                    'github_id': stmt.excluded.github_id,
                    'color': stmt.excluded.color,
                    'description': stmt.excluded.description,
                    'updated_at': stmt.excluded.updated_at,
                },
                where=(
                    labels_table.c.github_id.is_distinct_from(stmt.excluded.github_id)
                    | labels_table.c.color.is_distinct_from(stmt.excluded.color)
                    | labels_table.c.description.is_distinct_from(stmt.excluded.description)
                ),
            ))

    @_store_operation
    async def delete_label(self, owner: str, repo: str, name: str) -> bool:
        owner, repo = _norm(owner, repo)
        stmt = delete(labels_table).where(
            labels_table.c.owner == owner,
            labels_table.c.repo == repo,
            labels_table.c.name == name,
        )
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
            return result.rowcount > 0

    @_store_operation
    async def list_labels(self, owner: str, repo: str) -> List[LabelEntity]:
        owner, repo = _norm(owner, repo)
        async with self.engine.connect() as conn:
            labels_by_name = await self._labels_by_name(conn, owner, repo)
        return sorted(labels_by_name.values(), key=lambda label: label.name)

    @staticmethod
    async def _labels_by_name(conn, owner: str, repo: str) -> Dict[str, LabelEntity]:
        query = select(labels_table).where(labels_table.c.owner == owner, labels_table.c.repo == repo)
        rows = (await conn.execute(query)).mappings().all()
        return {
            row['name']: LabelEntity(
                id=row['github_id'] or 0,
                name=row['name'],
                color=row['color'],
                description=row['description'],
            )
            for row in rows
        }

    # Sync history

    @_store_operation
    async def insert_sync_record(self, record: SyncRecord, retention: int) -> SyncRecord:
        """
        Appends a sync record, then deletes the oldest rows for the same repository
        beyond `retention`, in the same transaction.
        """
        owner, repo = _norm(record.owner, record.repo)
        async with self.engine.begin() as conn:
            result = await conn.execute(sync_history_table.insert().values(
                owner=owner,
                repo=repo,
                status=record.status.value,
                sync_type=record.sync_type.value,
                issues_synced=record.issues_synced,
                error_message=record.error_message,
                last_sync_at=as_utc(record.last_sync_at),
            ))
            record_id = result.inserted_primary_key[0]

            excess = (
                await conn.execute(
                    select(sync_history_table.c.id)
                    .where(sync_history_table.c.owner == owner, sync_history_table.c.repo == repo)
                    .order_by(sync_history_table.c.last_sync_at.desc(), sync_history_table.c.id.desc())
                    .offset(retention)
                )
            ).scalars().all()
            if excess:
                await conn.execute(delete(sync_history_table).where(sync_history_table.c.id.in_(excess)))
                logger.debug(f"Pruned {len(excess)} sync records for {owner}/{repo}.")

        return record.model_copy(update={'id': record_id, 'owner': owner, 'repo': repo})

    async def latest_sync_record(
        self,
        owner: str,
        repo: str,
        status: Optional[SyncStatus] = None,
        sync_types: Optional[Sequence[SyncType]] = None,
    ) -> Optional[SyncRecord]:
        records = await self.list_sync_records(owner, repo, limit=1, status=status, sync_types=sync_types)
        return records[0] if records else None

    @_store_operation
    async def list_sync_records(
        self,
        owner: str,
        repo: str,
        limit: Optional[int] = None,
        status: Optional[SyncStatus] = None,
        sync_types: Optional[Sequence[SyncType]] = None,
    ) -> List[SyncRecord]:
        owner, repo = _norm(owner, repo)
        query = (
            select(sync_history_table)
            .where(sync_history_table.c.owner == owner, sync_history_table.c.repo == repo)
            .order_by(sync_history_table.c.last_sync_at.desc(), sync_history_table.c.id.desc())
        )
        if status is not None:
            query = query.where(sync_history_table.c.status == status.value)
        if sync_types:
            query = query.where(sync_history_table.c.sync_type.in_([t.value for t in sync_types]))
        if limit is not None:
            query = query.limit(limit)

        async with self.engine.connect() as conn:
            rows = (await conn.execute(query)).mappings().all()
        return [
            SyncRecord(
                id=row['id'],
                owner=row['owner'],
                repo=row['repo'],
                status=SyncStatus(row['status']),
                sync_type=SyncType(row['sync_type']),
                issues_synced=row['issues_synced'],
                error_message=row['error_message'],
                last_sync_at=as_utc(row['last_sync_at']),
            )
            for row in rows
        ]
