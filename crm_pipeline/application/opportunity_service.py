import logging
import math
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, List, Mapping, Optional, Sequence, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from crm_pipeline.application import pipeline_aggregator
from crm_pipeline.domain import stage_policy
from crm_pipeline.domain.exceptions import (
    Conflict,
    InvalidState,
    NotFound,
    ReferenceNotFound,
    RepositoryError,
    ValidationError,
)
from crm_pipeline.domain.models import (
    MAX_VALUE,
    Opportunity,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityPage,
    OpportunityUpdate,
    OpportunityView,
    PageRequest,
    PipelineReport,
    PipelineStats,
    SortSpec,
    StageChange,
    Status,
)
from crm_pipeline.domain.ports import OpportunityRepository, ReferenceChecker
from crm_pipeline.domain.stage_policy import Stage
from crm_pipeline.infrastructure.acl import OpportunityTranslator

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT", bound=BaseModel)

DEFAULT_SEARCH_LIMIT = 10
# Upper bound of PageRequest.per_page
MAX_SEARCH_LIMIT = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OpportunityService:
    """
    Service responsible for the sales pipeline: creating and updating
    opportunities, moving them through stages, closing them, and reporting
    on the pipeline.

    Every mutation loads the opportunity, applies the change to the entity,
    and persists it with a single repository save. The repository rejects
    the save with Conflict when another writer got there first; callers
    reload and retry, nothing is retried here.
    """

    def __init__(
            self,
            repository: OpportunityRepository,
            companies: ReferenceChecker,
            contacts: ReferenceChecker,
            users: ReferenceChecker,
            clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.companies = companies
        self.contacts = contacts
        self.users = users
        self.clock = clock

    async def create(self, data: Union[OpportunityCreate, Mapping[str, Any]], actor_id: Optional[str] = None) -> OpportunityView:
        """
        Creates an opportunity in the first pipeline stage unless a stage is given.

        Args:
            data: Create payload; `title`, `value` and `owner_id` are required.
            actor_id: The user performing the operation.

        Returns:
            OpportunityView: The persisted opportunity.
        """
        payload = self._parse(OpportunityCreate, data)
        await self._check_references(
            owner_id=payload.owner_id,
            company_id=payload.company_id,
            contact_id=payload.contact_id,
        )

        now = self.clock()
        stage = payload.stage or stage_policy.stages()[0]
        probability = payload.probability
        if probability is None:
            probability = stage_policy.default_probability(stage)

        try:
            opportunity = Opportunity(
                title=payload.title,
                description=payload.description,
                value=payload.value,
                stage=stage,
                status=Status.ACTIVE,
                probability=probability,
                expected_close_date=payload.expected_close_date,
                company_id=payload.company_id,
                contact_id=payload.contact_id,
                owner_id=payload.owner_id,
                source=payload.source,
                competitors=payload.competitors,
                notes=payload.notes,
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e) from e

        saved = await self._persist(opportunity)
        logger.info(
            f"Opportunity {saved.id} created by {actor_id or 'system'}: "
            f"'{saved.title}' value={saved.value} stage={saved.stage.value} owner={saved.owner_id}."
        )
        return OpportunityTranslator.to_view(saved)

    async def get(self, opportunity_id: str) -> OpportunityView:
        return OpportunityTranslator.to_view(await self._load(opportunity_id))

    async def update(
            self,
            opportunity_id: str,
            data: Union[OpportunityUpdate, Mapping[str, Any]],
            actor_id: Optional[str] = None,
    ) -> OpportunityView:
        """
        Applies the fields present in `data`.

        A stage change goes through the same transition rules as move_stage,
        so an update can never skip backwards or reopen a closed deal.
        """
        if isinstance(data, Mapping) and "status" in data:
            raise ValidationError("status", "status changes only through close or a move to the lost stage")
        payload = self._parse(OpportunityUpdate, data)
        opportunity = await self._load(opportunity_id)

        fields = payload.model_dump(exclude_unset=True)
        reason = fields.pop("reason", None)
        new_stage = fields.pop("stage", None)
        probability = fields.pop("probability", None)

        await self._check_references(**{
            name: fields[name]
            for name in ("owner_id", "company_id", "contact_id")
            if fields.get(name) is not None and fields[name] != getattr(opportunity, name)
        })

        now = self.clock()
        stage_moves = new_stage is not None and new_stage is not opportunity.stage
        if probability is not None and not stage_moves:
            fields["probability"] = probability

        changes: List[StageChange] = []
        opportunity.revise(now, **fields)
        if stage_moves:
            changes.append(opportunity.move_to(new_stage, now, probability, actor_id, reason))

        saved = await self._persist(opportunity, changes)
        if changes:
            logger.info(
                f"Opportunity {saved.id} stage changed {changes[0].old_stage.value} -> "
                f"{changes[0].new_stage.value} by {actor_id or 'system'}."
            )
        logger.info(f"Opportunity {saved.id} updated: {sorted(payload.model_fields_set)}.")
        return OpportunityTranslator.to_view(saved)

    async def move_stage(
            self,
            opportunity_id: str,
            new_stage: Union[Stage, str],
            actor_id: Optional[str] = None,
            probability: Optional[int] = None,
            reason: Optional[str] = None,
    ) -> OpportunityView:
        """
        Moves an active opportunity forward, or to the lost stage from anywhere.

        The probability becomes the override when given, otherwise the target
        stage's default. The move is recorded in the stage history.
        """
        stage = stage_policy.parse_stage(new_stage)
        if probability is not None and not 0 <= probability <= 100:
            raise ValidationError("probability", "must be between 0 and 100")

        opportunity = await self._load(opportunity_id)
        change = opportunity.move_to(stage, self.clock(), probability, actor_id, reason)
        saved = await self._persist(opportunity, [change])

        logger.info(
            f"Opportunity {saved.id} moved {change.old_stage.value} -> {change.new_stage.value} "
            f"(probability {change.old_probability} -> {change.new_probability}) by {actor_id or 'system'}."
        )
        return OpportunityTranslator.to_view(saved)

    async def close(
            self,
            opportunity_id: str,
            won: bool,
            actor_id: Optional[str] = None,
            final_value: Optional[Union[Decimal, int, float, str]] = None,
            notes: Optional[str] = None,
    ) -> OpportunityView:
        """Closes an active opportunity as won or lost. Closing twice is refused."""
        value = self._parse_amount("final_value", final_value) if final_value is not None else None

        opportunity = await self._load(opportunity_id)
        now = self.clock()
        change = opportunity.close(won, now, value, actor_id, notes)
        if notes:
            opportunity.append_note(notes, now)
        saved = await self._persist(opportunity, [change] if change else [])

        logger.info(
            f"Opportunity {saved.id} closed as {saved.status.value} by {actor_id or 'system'} "
            f"with value {saved.value}."
        )
        return OpportunityTranslator.to_view(saved)

    async def delete(self, opportunity_id: str, actor_id: Optional[str] = None) -> None:
        """Logically deletes an active opportunity. Closed deals are kept for reporting."""
        opportunity = await self._load(opportunity_id)
        if opportunity.is_closed:
            raise InvalidState(opportunity.id, opportunity.status.value, "delete")

        try:
            await self.repository.delete(opportunity.id, opportunity.version)
        except Conflict:
            logger.warning(
                f"Opportunity {opportunity.id} changed since version {opportunity.version} was loaded; delete rejected."
            )
            raise
        except RepositoryError as e:
            logger.error(f"Failed to delete opportunity {opportunity_id}: {e}")
            raise
        logger.info(f"Opportunity {opportunity_id} deleted by {actor_id or 'system'}.")

    async def history(self, opportunity_id: str) -> List[StageChange]:
        """Returns the opportunity's stage changes, oldest first."""
        await self._load(opportunity_id)
        return await self.repository.stage_history(opportunity_id)

    async def list(
            self,
            filters: Optional[OpportunityFilter] = None,
            sort: Optional[SortSpec] = None,
            page: Optional[PageRequest] = None,
    ) -> OpportunityPage:
        page = page or PageRequest()
        items, total = await self.repository.query(filters or OpportunityFilter(), sort or SortSpec(), page)
        return OpportunityPage(
            items=[OpportunityTranslator.to_view(item) for item in items],
            total=total,
            page=page.page,
            per_page=page.per_page,
            total_pages=math.ceil(total / page.per_page),
        )

    async def search(self, text: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[OpportunityView]:
        """Finds opportunities whose title or description contains `text`."""
        if not text or not text.strip():
            raise ValidationError("search", "search text must not be empty")
        limit = max(1, min(limit, MAX_SEARCH_LIMIT))
        items, _ = await self.repository.query(
            OpportunityFilter(search=text.strip()),
            SortSpec(),
            PageRequest(page=1, per_page=limit),
        )
        return [OpportunityTranslator.to_view(item) for item in items]

    async def pipeline(self, filters: Optional[OpportunityFilter] = None) -> PipelineReport:
        """Summarizes the active opportunities matching `filters`, grouped by stage."""
        filters = (filters or OpportunityFilter()).model_copy(update={"status": Status.ACTIVE})
        items, total = await self.repository.query(filters)
        logger.info(f"Pipeline report built over {total} active opportunities.")
        return pipeline_aggregator.summarize_pipeline(items)

    async def stats(self, filters: Optional[OpportunityFilter] = None) -> PipelineStats:
        """Computes counts, values, weighted value and win rate over the matching opportunities."""
        filters = (filters or OpportunityFilter()).model_copy(update={"status": None})
        items, total = await self.repository.query(filters)
        logger.info(f"Pipeline stats computed over {total} opportunities.")
        return pipeline_aggregator.compute_stats(items)

    async def _load(self, opportunity_id: str) -> Opportunity:
        opportunity = await self.repository.find_by_id(opportunity_id)
        if opportunity is None:
            raise NotFound(opportunity_id)
        return opportunity

    async def _persist(self, opportunity: Opportunity, changes: Sequence[StageChange] = ()) -> Opportunity:
        try:
            return await self.repository.save(opportunity, changes)
        except Conflict:
            logger.warning(
                f"Opportunity {opportunity.id} changed since version {opportunity.version} was loaded; write rejected."
            )
            raise
        except RepositoryError as e:
            logger.error(f"Failed to save opportunity {opportunity.id}: {e}")
            raise

    async def _check_references(
            self,
            owner_id: Optional[str] = None,
            company_id: Optional[str] = None,
            contact_id: Optional[str] = None,
    ) -> None:
        checks = (
            ("owner", self.users, owner_id),
            ("company", self.companies, company_id),
            ("contact", self.contacts, contact_id),
        )
        for kind, checker, ref_id in checks:
            if ref_id is not None and not await checker.exists(ref_id):
                raise ReferenceNotFound(kind, ref_id)

    @staticmethod
    def _parse(model: Type[InputT], data: Union[InputT, Mapping[str, Any]]) -> InputT:
        if isinstance(data, model):
            return data
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e) from e

    @staticmethod
    def _parse_amount(field: str, raw: Union[Decimal, int, float, str]) -> Decimal:
        try:
            amount = raw if isinstance(raw, Decimal) else Decimal(str(raw))
        except InvalidOperation:
            raise ValidationError(field, f"{raw!r} is not a number") from None
        if not amount.is_finite() or amount < 0:
            raise ValidationError(field, "must be a non-negative number")
        if amount > MAX_VALUE:
            raise ValidationError(field, f"must not exceed {MAX_VALUE}")
        return amount
