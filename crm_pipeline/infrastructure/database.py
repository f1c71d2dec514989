from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    column,
    exists,
    func,
    insert,
    or_,
    select,
    table,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from crm_pipeline.domain.exceptions import Conflict, RepositoryError
from crm_pipeline.domain.models import (
    Opportunity,
    OpportunityFilter,
    PageRequest,
    SortSpec,
    StageChange,
    Status,
)
from crm_pipeline.infrastructure.acl import OpportunityTranslator

# SQLAlchemy core Table definitions
metadata = MetaData()
opportunities_table = Table(
    'opportunities', metadata,
    Column('id', String, primary_key=True),
    Column('title', String(255), nullable=False),
    Column('description', Text),
    Column('value', Numeric(15, 2), nullable=False),
    Column('stage', String(32), nullable=False, index=True),
    Column('status', String(16), nullable=False, index=True),
    Column('probability', Integer, nullable=False),
    Column('expected_close_date', Date),
    Column('actual_close_date', DateTime(timezone=True)),
    Column('company_id', String, index=True),
    Column('contact_id', String),
    Column('owner_id', String, nullable=False, index=True),
    Column('source', String(255)),
    Column('competitors', Text),
    Column('notes', Text),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('deleted_at', DateTime(timezone=True)),
    Column('version', Integer, nullable=False),
)
stage_changes_table = Table(
    'opportunity_stage_changes', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('opportunity_id', String, ForeignKey('opportunities.id'), nullable=False, index=True),
    Column('old_stage', String(32), nullable=False),
    Column('new_stage', String(32), nullable=False),
    Column('old_probability', Integer, nullable=False),
    Column('new_probability', Integer, nullable=False),
    Column('actor_id', String),
    Column('reason', Text),
    Column('changed_at', DateTime(timezone=True), nullable=False),
)


class PostgresOpportunityRepository:
    """
    Repository class for opportunities stored in PostgreSQL.

    Writes use optimistic concurrency: an update only matches the row when
    its version is still the one the entity was loaded with.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def find_by_id(self, opportunity_id: str) -> Optional[Opportunity]:
        stmt = select(opportunities_table).where(
            opportunities_table.c.id == opportunity_id,
            opportunities_table.c.deleted_at.is_(None),
        )
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                row = result.first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load opportunity {opportunity_id}: {e}") from e

        if row is None:
            return None
        return OpportunityTranslator.to_domain(row._mapping)

    async def save(self, opportunity: Opportunity, changes: Sequence[StageChange] = ()) -> Opportunity:
        """
        Inserts a new opportunity or updates a loaded one, together with its
        stage changes, in a single transaction.

        Args:
            opportunity (Opportunity): The entity; version 0 means never persisted.
            changes (Sequence[StageChange]): Stage history entries to append.

        Returns:
            Opportunity: A copy carrying the new version.
        """
        record = OpportunityTranslator.to_record(opportunity)
        record['version'] = opportunity.version + 1

        try:
            async with self.engine.begin() as conn:
                if opportunity.version == 0:
                    await conn.execute(insert(opportunities_table).values(record))
                else:
                    stmt = (
                        update(opportunities_table)
                        .where(
                            opportunities_table.c.id == opportunity.id,
                            opportunities_table.c.version == opportunity.version,
                            opportunities_table.c.deleted_at.is_(None),
                        )
                        .values(record)
                    )
                    result = await conn.execute(stmt)
                    # Zero rows means the version moved on (or the row is gone); the transaction rolls back.
                    if result.rowcount == 0:
                        raise Conflict(opportunity.id, opportunity.version)

                if changes:
                    await conn.execute(
                        insert(stage_changes_table).values(
                            [OpportunityTranslator.stage_change_to_record(change) for change in changes]
                        )
                    )
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to save opportunity {opportunity.id}: {e}") from e

        return opportunity.model_copy(update={'version': record['version']})

    async def delete(self, opportunity_id: str, expected_version: int) -> None:
        """
        Marks an active opportunity as deleted.

        The row must still be at `expected_version`; a concurrent close or
        edit in between makes the delete fail with Conflict.
        """
        stmt = (
            update(opportunities_table)
            .where(
                opportunities_table.c.id == opportunity_id,
                opportunities_table.c.version == expected_version,
                opportunities_table.c.status == Status.ACTIVE.value,
                opportunities_table.c.deleted_at.is_(None),
            )
            .values(
                deleted_at=datetime.now(timezone.utc),
                version=opportunities_table.c.version + 1,
            )
        )
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
                if result.rowcount == 0:
                    raise Conflict(opportunity_id, expected_version)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to delete opportunity {opportunity_id}: {e}") from e

    async def query(
        self,
        filters: OpportunityFilter,
        sort: Optional[SortSpec] = None,
        page: Optional[PageRequest] = None,
    ) -> Tuple[List[Opportunity], int]:
        """
        Returns the opportunities matching `filters` and the total match count.
        Without `page` every match is returned.
        """
        conditions = self._build_conditions(filters)
        sort = sort or SortSpec()
        sort_column = opportunities_table.c[sort.field]

        count_stmt = select(func.count()).select_from(opportunities_table).where(*conditions)
        items_stmt = (
            select(opportunities_table)
            .where(*conditions)
            .order_by(sort_column.desc() if sort.descending else sort_column.asc(), opportunities_table.c.id)
        )
        if page is not None:
            items_stmt = items_stmt.offset(page.offset).limit(page.per_page)

        try:
            async with self.engine.connect() as conn:
                total = (await conn.execute(count_stmt)).scalar_one()
                rows = (await conn.execute(items_stmt)).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to query opportunities: {e}") from e

        return [OpportunityTranslator.to_domain(row._mapping) for row in rows], total

    async def stage_history(self, opportunity_id: str) -> List[StageChange]:
        stmt = (
            select(stage_changes_table)
            .where(stage_changes_table.c.opportunity_id == opportunity_id)
            .order_by(stage_changes_table.c.changed_at, stage_changes_table.c.id)
        )
        try:
            async with self.engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load stage history of {opportunity_id}: {e}") from e
        return [OpportunityTranslator.stage_change_to_domain(row._mapping) for row in rows]

    @staticmethod
    def _build_conditions(filters: OpportunityFilter) -> list:
        c = opportunities_table.c
        conditions = [c.deleted_at.is_(None)]

        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(or_(c.title.ilike(pattern), c.description.ilike(pattern)))
        if filters.status is not None:
            conditions.append(c.status == filters.status.value)
        if filters.stage is not None:
            conditions.append(c.stage == filters.stage.value)
        if filters.company_id:
            conditions.append(c.company_id == filters.company_id)
        if filters.owner_id:
            conditions.append(c.owner_id == filters.owner_id)
        if filters.min_value is not None:
            conditions.append(c.value >= filters.min_value)
        if filters.max_value is not None:
            conditions.append(c.value <= filters.max_value)
        if filters.created_from is not None:
            conditions.append(c.created_at >= filters.created_from)
        if filters.created_to is not None:
            conditions.append(c.created_at <= filters.created_to)
        if filters.expected_close_from is not None:
            conditions.append(c.expected_close_date >= filters.expected_close_from)
        if filters.expected_close_to is not None:
            conditions.append(c.expected_close_date <= filters.expected_close_to)

        return conditions


class PostgresReferenceChecker:
    """
    Checks that a row with the given primary key exists in a table owned by
    another part of the CRM (companies, contacts, users).
    """

    def __init__(self, engine: AsyncEngine, table_name: str, id_column: str = 'id'):
        self.engine = engine
        self.table_name = table_name
        self._table = table(table_name, column(id_column))
        self._id = self._table.c[id_column]

    async def exists(self, ref_id: str) -> bool:
        stmt = select(exists().where(self._id == ref_id))
        try:
            async with self.engine.connect() as conn:
                return bool((await conn.execute(stmt)).scalar())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to check {self.table_name} '{ref_id}': {e}") from e
