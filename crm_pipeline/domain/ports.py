from typing import List, Optional, Protocol, Sequence, Tuple

from crm_pipeline.domain.models import (
    Opportunity,
    OpportunityFilter,
    PageRequest,
    SortSpec,
    StageChange,
)


class OpportunityRepository(Protocol):
    """
    Storage contract for opportunities.

    `save` must reject a write with Conflict when the stored version moved
    past `opportunity.version`, and must persist `changes` in the same unit
    of work as the opportunity itself. `delete` applies the same version
    check and only removes an active opportunity.
    """

    async def find_by_id(self, opportunity_id: str) -> Optional[Opportunity]: ...

    async def save(self, opportunity: Opportunity, changes: Sequence[StageChange] = ()) -> Opportunity: ...

    async def delete(self, opportunity_id: str, expected_version: int) -> None: ...

    async def query(
        self,
        filters: OpportunityFilter,
        sort: Optional[SortSpec] = None,
        page: Optional[PageRequest] = None,
    ) -> Tuple[List[Opportunity], int]: ...

    async def stage_history(self, opportunity_id: str) -> List[StageChange]: ...


class ReferenceChecker(Protocol):
    """Existence check for an entity owned by another part of the CRM."""

    async def exists(self, ref_id: str) -> bool: ...
