import logging
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Type

from pydantic import BaseModel
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    event,
    false,
    func,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import ArgumentError, DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from src.domain.exceptions import (
    AlreadyExistsException,
    ConfigurationException,
    DatabaseException,
    NotFoundException,
    TransactionException,
    TransientIOException,
    ValidationException,
)
from src.domain.models import (
    IssueEntity,
    IssueListOptions,
    IssueStateFilter,
    LabelEntity,
    ListOptions,
    MilestoneEntity,
    RepositoryEntity,
    RepositoryListOptions,
    UserEntity,
)
from src.domain.storage import IssueStorage

logger = logging.getLogger(__name__)

# SQLAlchemy core Table definitions
metadata = MetaData()

users_table = Table(
    'users', metadata,
    Column('id', BigInteger, primary_key=True, autoincrement=False),
    Column('login', String, nullable=False),
    Column('avatar_url', String, nullable=False, server_default=''),
    Column('html_url', String, nullable=False, server_default=''),
)

labels_table = Table(
    'labels', metadata,
    Column('id', BigInteger, primary_key=True, autoincrement=False),
    Column('name', String, nullable=False),
    Column('color', String, nullable=False, server_default=''),
    Column('description', String, nullable=False, server_default=''),
    Index('ix_labels_name', 'name'),
)

milestones_table = Table(
    'milestones', metadata,
    Column('id', BigInteger, primary_key=True, autoincrement=False),
    Column('number', Integer, nullable=False),
    Column('title', String, nullable=False),
    Column('description', Text, nullable=False, server_default=''),
    Column('state', String, nullable=False, server_default='open'),
    Column('due_on', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
)

issues_table = Table(
    'issues', metadata,
    Column('id', BigInteger, primary_key=True, autoincrement=False),
    Column('number', Integer, nullable=False),
    Column('title', String, nullable=False),
    Column('body', Text, nullable=False, server_default=''),
    Column('state', String, nullable=False, server_default='open'),
    Column('comments', Integer, nullable=False, server_default='0'),
    Column('locked', Boolean, nullable=False, server_default=false()),
    Column('html_url', String, nullable=False, server_default=''),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('closed_at', DateTime(timezone=True), nullable=True),
    Column('user_id', BigInteger, ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
    Column('milestone_id', BigInteger, ForeignKey('milestones.id', ondelete='SET NULL'), nullable=True),
    Column('synced_at', DateTime(timezone=True), server_default=func.now()),
)
Index('ix_issues_number', issues_table.c.number, unique=True)
Index('ix_issues_state', issues_table.c.state)
Index('ix_issues_created_at', issues_table.c.created_at.desc())
Index('ix_issues_updated_at', issues_table.c.updated_at.desc())

issue_labels_table = Table(
    'issue_labels', metadata,
    Column('issue_id', BigInteger, ForeignKey('issues.id', ondelete='CASCADE'), primary_key=True),
    Column('label_id', BigInteger, ForeignKey('labels.id', ondelete='CASCADE'), primary_key=True),
)

issue_assignees_table = Table(
    'issue_assignees', metadata,
    Column('issue_id', BigInteger, ForeignKey('issues.id', ondelete='CASCADE'), primary_key=True),
    Column('user_id', BigInteger, ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
)

repositories_table = Table(
    'repositories', metadata,
    Column('id', BigInteger, primary_key=True, autoincrement=False),
    Column('name', String, nullable=False),
    Column('full_name', String, nullable=False),
    Column('owner_login', String, nullable=False),
    Column('description', Text, nullable=False, server_default=''),
    Column('private', Boolean, nullable=False, server_default=false()),
    Column('archived', Boolean, nullable=False, server_default=false()),
    Column('disabled', Boolean, nullable=False, server_default=false()),
    Column('html_url', String, nullable=False, server_default=''),
    Column('default_branch', String, nullable=False, server_default='main'),
    Column('language', String, nullable=False, server_default=''),
    Column('stargazers_count', Integer, nullable=False, server_default='0'),
    Column('forks_count', Integer, nullable=False, server_default='0'),
    Column('open_issues_count', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('pushed_at', DateTime(timezone=True), nullable=True),
    Column('synced_at', DateTime(timezone=True), server_default=func.now()),
    Index('ix_repositories_full_name', 'full_name', unique=True),
    Index('ix_repositories_owner_login', 'owner_login'),
)

# Dialects with a native INSERT ... ON CONFLICT
_DIALECT_INSERTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _as_utc(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


def _columns(table: Table, entity: BaseModel, fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Column values for ``entity``, restricted to ``fields`` when given."""
    keys = set(table.c.keys()) if fields is None else set(fields) & set(table.c.keys())
    return {key: _as_utc(getattr(entity, key)) for key in keys if hasattr(entity, key)}


def _row_dict(row) -> Dict[str, Any]:
    return {key: _as_utc(value) for key, value in row._mapping.items()}


def _require_id(entity_id: Optional[int], kind: str) -> None:
    if not entity_id:
        raise ValidationException(f"{kind} id is required")


def _paginate(stmt, options: ListOptions):
    # offset=0, limit=0 returns every match
    if options.limit > 0:
        stmt = stmt.limit(options.limit)
    if options.offset > 0:
        stmt = stmt.offset(options.offset)
    return stmt


@contextmanager
def _translate_errors(operation: str, entity_id: Any = None):
    """Re-raises engine errors as domain exceptions carrying operation context."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        raise TransientIOException(operation, entity_id, str(e.orig or e)) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise TransientIOException(operation, entity_id, str(e.orig or e)) from e
        raise DatabaseException(operation, entity_id, str(e.orig or e)) from e
    except SQLAlchemyError as e:
        raise DatabaseException(operation, entity_id, str(e)) from e
    except OSError as e:
        raise TransientIOException(operation, entity_id, str(e)) from e


class RelationalRepository(IssueStorage):
    """
    IssueStorage backed by a relational database through SQLAlchemy core.
    Singular associations (creator, milestone) are foreign key columns, plural
    ones (labels, assignees) are join tables.

    Works against PostgreSQL (asyncpg) and SQLite (aiosqlite).
    """

    def __init__(self, db_url: str, **engine_options: Any):
        try:
            self.engine = create_async_engine(db_url, echo=False, **engine_options)
        except (ArgumentError, TypeError) as e:
            raise ConfigurationException(f"Invalid database settings: {e}") from e
        dialect = self.engine.dialect.name
        if dialect not in _DIALECT_INSERTS:
            raise ValidationException(f"Unsupported database dialect: {dialect}")
        self._insert = _DIALECT_INSERTS[dialect]
        if dialect == 'sqlite':
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self._closed = False

    # Plumbing

    @asynccontextmanager
    async def _connection(self, operation: str, entity_id: Any = None):
        with _translate_errors(operation, entity_id):
            async with self.engine.connect() as conn:
                yield conn

    @asynccontextmanager
    async def _transaction(self, operation: str, entity_id: Any = None):
        """
        Yields a connection inside a transaction. Anything that leaves the block
        without reaching the commit (an error, a cancelled task) rolls back.
        """
        with _translate_errors(operation, entity_id):
            async with self.engine.connect() as conn:
                trans = await conn.begin()
                try:
                    yield conn
                except BaseException:
                    await trans.rollback()
                    raise
                try:
                    await trans.commit()
                except SQLAlchemyError as e:
                    raise TransactionException(operation, entity_id, str(e)) from e

    def _upsert_stmt(self, table: Table, values: Dict[str, Any]):
        stmt = self._insert(table).values(values)
        set_ = {key: stmt.excluded[key] for key in values if key != 'id'}
        if 'synced_at' in table.c.keys():
            set_['synced_at'] = func.now()
        return stmt.on_conflict_do_update(index_elements=['id'], set_=set_)

    @staticmethod
    async def _existing_ids(conn: AsyncConnection, table: Table, ids: Iterable[int]) -> Set[int]:
        ids = list(ids)
        if not ids:
            return set()
        result = await conn.execute(select(table.c.id).where(table.c.id.in_(ids)))
        return set(result.scalars().all())

    async def _exists(self, conn: AsyncConnection, table: Table, entity_id: int) -> bool:
        return bool(await self._existing_ids(conn, table, [entity_id]))

    async def _create(self, table: Table, entity: BaseModel, kind: str) -> None:
        _require_id(entity.id, kind)
        async with self._transaction(f"create_{kind}", entity.id) as conn:
            if await self._exists(conn, table, entity.id):
                raise AlreadyExistsException(kind, entity.id)
            await conn.execute(table.insert().values(_columns(table, entity)))

    async def _upsert(self, table: Table, entity: BaseModel, kind: str) -> None:
        _require_id(entity.id, kind)
        async with self._transaction(f"upsert_{kind}", entity.id) as conn:
            await conn.execute(self._upsert_stmt(table, _columns(table, entity)))

    async def _get(self, table: Table, model: Type[BaseModel], kind: str, column, key: Any):
        async with self._connection(f"get_{kind}", key) as conn:
            row = (await conn.execute(select(table).where(column == key))).first()
        if row is None:
            raise NotFoundException(kind, key)
        return model.model_validate(_row_dict(row))

    async def _list(self, table: Table, model: Type[BaseModel], kind: str,
                    options: ListOptions, *criteria) -> list:
        stmt = _paginate(select(table).where(*criteria).order_by(table.c.id), options)
        async with self._connection(f"list_{kind}") as conn:
            rows = (await conn.execute(stmt)).all()
        return [model.model_validate(_row_dict(row)) for row in rows]

    async def _require_row(self, conn: AsyncConnection, table: Table, kind: str, entity_id: int) -> None:
        _require_id(entity_id, kind)
        if not await self._exists(conn, table, entity_id):
            raise NotFoundException(kind, entity_id)

    # Issue writes

    async def _drop_missing_references(self, conn: AsyncConnection, issue_id: int,
                                       values: Dict[str, Any]) -> None:
        """Unlinks a creator or milestone that is not stored (yet) instead of failing."""
        for key, table in (('user_id', users_table), ('milestone_id', milestones_table)):
            ref = values.get(key)
            if ref is not None and not await self._exists(conn, table, ref):
                logger.debug(f"Issue {issue_id}: {key}={ref} not stored yet, leaving it unlinked.")
                values[key] = None

    async def _link(self, conn: AsyncConnection, join_table: Table, column: str,
                    target: Table, issue_id: int, ids: Iterable[int]) -> None:
        # Append-only: links absent from ``ids`` are kept.
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return
        present = await self._existing_ids(conn, target, wanted)
        missing = [i for i in wanted if i not in present]
        if missing:
            logger.debug(f"Issue {issue_id}: skipping {column} links to unknown ids {missing}.")
        rows = [{'issue_id': issue_id, column: i} for i in wanted if i in present]
        if rows:
            await conn.execute(self._insert(join_table).values(rows).on_conflict_do_nothing())

    async def _write_issue(self, conn: AsyncConnection, issue: IssueEntity, create: bool = False) -> None:
        _require_id(issue.id, "issue")
        values = _columns(issues_table, issue)
        await self._drop_missing_references(conn, issue.id, values)

        if create:
            if await self._exists(conn, issues_table, issue.id):
                raise AlreadyExistsException("issue", issue.id)
            await conn.execute(issues_table.insert().values(values))
        else:
            await conn.execute(self._upsert_stmt(issues_table, values))

        await self._link(conn, issue_labels_table, 'label_id', labels_table, issue.id, issue.label_ids)
        await self._link(conn, issue_assignees_table, 'user_id', users_table, issue.id, issue.assignee_ids)

    async def create_issue(self, issue: IssueEntity) -> None:
        async with self._transaction("create_issue", issue.id) as conn:
            await self._write_issue(conn, issue, create=True)

    async def upsert_issue(self, issue: IssueEntity) -> None:
        await self.batch_upsert_issues([issue])

    async def batch_upsert_issues(self, issues: List[IssueEntity]) -> None:
        if not issues:
            return
        async with self._transaction("batch_upsert_issues") as conn:
            for issue in issues:
                await self._write_issue(conn, issue)

    async def update_issue(self, issue: IssueEntity) -> None:
        fields = issue.model_fields_set - {'id'}
        values = _columns(issues_table, issue, fields)
        async with self._transaction("update_issue", issue.id) as conn:
            await self._require_row(conn, issues_table, "issue", issue.id)
            await self._drop_missing_references(conn, issue.id, values)
            await conn.execute(
                update(issues_table)
                .where(issues_table.c.id == issue.id)
                .values(synced_at=func.now(), **values)
            )
            if 'label_ids' in fields:
                await self._link(conn, issue_labels_table, 'label_id', labels_table, issue.id, issue.label_ids)
            if 'assignee_ids' in fields:
                await self._link(conn, issue_assignees_table, 'user_id', users_table, issue.id, issue.assignee_ids)

    async def delete_issue(self, issue_id: int) -> None:
        async with self._transaction("delete_issue", issue_id) as conn:
            await self._require_row(conn, issues_table, "issue", issue_id)
            await conn.execute(delete(issue_labels_table).where(issue_labels_table.c.issue_id == issue_id))
            await conn.execute(delete(issue_assignees_table).where(issue_assignees_table.c.issue_id == issue_id))
            await conn.execute(delete(issues_table).where(issues_table.c.id == issue_id))

    # Issue reads

    async def _fetch_by_ids(self, conn: AsyncConnection, table: Table,
                            model: Type[BaseModel], ids: Set[int]) -> Dict[int, Any]:
        if not ids:
            return {}
        rows = (await conn.execute(select(table).where(table.c.id.in_(ids)))).all()
        return {row.id: model.model_validate(_row_dict(row)) for row in rows}

    async def _fetch_linked(self, conn: AsyncConnection, join_table: Table, column: str,
                            target: Table, model: Type[BaseModel], issue_ids: List[int]) -> Dict[int, list]:
        stmt = (
            select(join_table.c.issue_id, target)
            .join(target, target.c.id == join_table.c[column])
            .where(join_table.c.issue_id.in_(issue_ids))
            .order_by(join_table.c.issue_id, target.c.id)
        )
        linked: Dict[int, list] = {}
        for row in (await conn.execute(stmt)).all():
            linked.setdefault(row.issue_id, []).append(model.model_validate(_row_dict(row)))
        return linked

    async def _load_issues(self, conn: AsyncConnection, stmt) -> List[IssueEntity]:
        """Runs ``stmt`` and resolves creator, milestone, labels and assignees in one query each."""
        rows = [_row_dict(row) for row in (await conn.execute(stmt)).all()]
        if not rows:
            return []

        issue_ids = [row['id'] for row in rows]
        users = await self._fetch_by_ids(
            conn, users_table, UserEntity, {row['user_id'] for row in rows if row['user_id'] is not None}
        )
        milestones = await self._fetch_by_ids(
            conn, milestones_table, MilestoneEntity,
            {row['milestone_id'] for row in rows if row['milestone_id'] is not None},
        )
        labels = await self._fetch_linked(conn, issue_labels_table, 'label_id', labels_table, LabelEntity, issue_ids)
        assignees = await self._fetch_linked(conn, issue_assignees_table, 'user_id', users_table, UserEntity, issue_ids)

        issues = []
        for row in rows:
            issue_labels = labels.get(row['id'], [])
            issue_assignees = assignees.get(row['id'], [])
            issues.append(IssueEntity.model_validate({
                **row,
                'label_ids': [label.id for label in issue_labels],
                'assignee_ids': [user.id for user in issue_assignees],
                'user': users.get(row['user_id']),
                'milestone': milestones.get(row['milestone_id']),
                'labels': issue_labels,
                'assignees': issue_assignees,
            }))
        return issues

    async def _get_issue(self, operation: str, column, key: Any) -> IssueEntity:
        async with self._connection(operation, key) as conn:
            issues = await self._load_issues(conn, select(issues_table).where(column == key))
        if not issues:
            raise NotFoundException("issue", key)
        return issues[0]

    async def get_issue_by_id(self, issue_id: int) -> IssueEntity:
        return await self._get_issue("get_issue_by_id", issues_table.c.id, issue_id)

    async def get_issue_by_number(self, number: int) -> IssueEntity:
        return await self._get_issue("get_issue_by_number", issues_table.c.number, number)

    @staticmethod
    def _issue_criteria(state: IssueStateFilter, labels: Optional[List[str]] = None) -> list:
        criteria = []
        if state != 'all':
            criteria.append(issues_table.c.state == state)
        if labels:
            labelled = (
                select(issue_labels_table.c.issue_id)
                .join(labels_table, labels_table.c.id == issue_labels_table.c.label_id)
                .where(labels_table.c.name.in_(labels))
            )
            criteria.append(issues_table.c.id.in_(labelled))
        return criteria

    async def list_issues(self, options: Optional[IssueListOptions] = None) -> List[IssueEntity]:
        options = options or IssueListOptions()
        stmt = select(issues_table).where(*self._issue_criteria(options.state, options.labels))
        stmt = _paginate(stmt.order_by(issues_table.c.id), options)
        async with self._connection("list_issues") as conn:
            return await self._load_issues(conn, stmt)

    async def count_issues(self, state: IssueStateFilter = "all") -> int:
        stmt = select(func.count()).select_from(issues_table).where(*self._issue_criteria(state))
        async with self._connection("count_issues") as conn:
            return (await conn.execute(stmt)).scalar_one()

    # Users

    async def create_user(self, user: UserEntity) -> None:
        await self._create(users_table, user, "user")

    async def get_user_by_id(self, user_id: int) -> UserEntity:
        return await self._get(users_table, UserEntity, "user", users_table.c.id, user_id)

    async def upsert_user(self, user: UserEntity) -> None:
        await self._upsert(users_table, user, "user")

    async def list_users(self, options: Optional[ListOptions] = None) -> List[UserEntity]:
        return await self._list(users_table, UserEntity, "users", options or ListOptions())

    async def delete_user(self, user_id: int) -> None:
        async with self._transaction("delete_user", user_id) as conn:
            await self._require_row(conn, users_table, "user", user_id)
            await conn.execute(delete(issue_assignees_table).where(issue_assignees_table.c.user_id == user_id))
            await conn.execute(update(issues_table).where(issues_table.c.user_id == user_id).values(user_id=None))
            await conn.execute(delete(users_table).where(users_table.c.id == user_id))

    # Labels

    async def create_label(self, label: LabelEntity) -> None:
        await self._create(labels_table, label, "label")

    async def get_label_by_id(self, label_id: int) -> LabelEntity:
        return await self._get(labels_table, LabelEntity, "label", labels_table.c.id, label_id)

    async def upsert_label(self, label: LabelEntity) -> None:
        await self._upsert(labels_table, label, "label")

    async def list_labels(self, options: Optional[ListOptions] = None) -> List[LabelEntity]:
        return await self._list(labels_table, LabelEntity, "labels", options or ListOptions())

    async def delete_label(self, label_id: int) -> None:
        async with self._transaction("delete_label", label_id) as conn:
            await self._require_row(conn, labels_table, "label", label_id)
            await conn.execute(delete(issue_labels_table).where(issue_labels_table.c.label_id == label_id))
            await conn.execute(delete(labels_table).where(labels_table.c.id == label_id))

    # Milestones

    async def create_milestone(self, milestone: MilestoneEntity) -> None:
        await self._create(milestones_table, milestone, "milestone")

    async def get_milestone_by_id(self, milestone_id: int) -> MilestoneEntity:
        return await self._get(milestones_table, MilestoneEntity, "milestone", milestones_table.c.id, milestone_id)

    async def upsert_milestone(self, milestone: MilestoneEntity) -> None:
        await self._upsert(milestones_table, milestone, "milestone")

    async def list_milestones(self, options: Optional[ListOptions] = None) -> List[MilestoneEntity]:
        return await self._list(milestones_table, MilestoneEntity, "milestones", options or ListOptions())

    async def delete_milestone(self, milestone_id: int) -> None:
        async with self._transaction("delete_milestone", milestone_id) as conn:
            await self._require_row(conn, milestones_table, "milestone", milestone_id)
            await conn.execute(
                update(issues_table).where(issues_table.c.milestone_id == milestone_id).values(milestone_id=None)
            )
            await conn.execute(delete(milestones_table).where(milestones_table.c.id == milestone_id))

    # Repositories

    async def create_repository(self, repository: RepositoryEntity) -> None:
        await self._create(repositories_table, repository, "repository")

    async def get_repository_by_id(self, repository_id: int) -> RepositoryEntity:
        return await self._get(
            repositories_table, RepositoryEntity, "repository", repositories_table.c.id, repository_id
        )

    async def get_repository_by_full_name(self, full_name: str) -> RepositoryEntity:
        return await self._get(
            repositories_table, RepositoryEntity, "repository", repositories_table.c.full_name, full_name
        )

    async def upsert_repository(self, repository: RepositoryEntity) -> None:
        await self._upsert(repositories_table, repository, "repository")

    async def list_repositories(
        self, options: Optional[RepositoryListOptions] = None
    ) -> List[RepositoryEntity]:
        options = options or RepositoryListOptions()
        criteria = []
        if options.owner_login:
            criteria.append(repositories_table.c.owner_login == options.owner_login)
        if not options.include_archived:
            criteria.append(repositories_table.c.archived.is_(False))
        return await self._list(repositories_table, RepositoryEntity, "repositories", options, *criteria)

    async def delete_repository(self, repository_id: int) -> None:
        async with self._transaction("delete_repository", repository_id) as conn:
            await self._require_row(conn, repositories_table, "repository", repository_id)
            await conn.execute(delete(repositories_table).where(repositories_table.c.id == repository_id))

    # Lifecycle

    async def create_schema(self) -> None:
        async with self._transaction("create_schema") as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.engine.dispose()
