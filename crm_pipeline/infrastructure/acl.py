from typing import Any, Dict, Mapping

from crm_pipeline.domain import stage_policy
from crm_pipeline.domain.models import Opportunity, OpportunityView, StageChange, Status


class OpportunityTranslator:
    """
    Anti-corruption layer between storage rows, domain entities and the read
    model handed back to callers.
    """

    @staticmethod
    def to_domain(row: Mapping[str, Any]) -> Opportunity:
        """
        Builds an Opportunity from a stored row.

        Args:
            row (Mapping[str, Any]): Column name to value mapping of the opportunities table.

        Returns:
            Opportunity: The validated domain entity.
        """
        if not row.get("id"):
            raise ValueError("id is required to build Opportunity.")

        fields = {name: row[name] for name in Opportunity.model_fields if name in row}
        return Opportunity.model_validate(fields)

    @staticmethod
    def to_record(opportunity: Opportunity) -> Dict[str, Any]:
        """Flattens an Opportunity into column values, enums as plain strings."""
        return {
            'id': opportunity.id,
            'title': opportunity.title,
            'description': opportunity.description,
            'value': opportunity.value,
            'stage': opportunity.stage.value,
            'status': opportunity.status.value,
            'probability': opportunity.probability,
            'expected_close_date': opportunity.expected_close_date,
            'actual_close_date': opportunity.actual_close_date,
            'company_id': opportunity.company_id,
            'contact_id': opportunity.contact_id,
            'owner_id': opportunity.owner_id,
            'source': opportunity.source,
            'competitors': opportunity.competitors,
            'notes': opportunity.notes,
            'created_at': opportunity.created_at,
            'updated_at': opportunity.updated_at,
            'deleted_at': opportunity.deleted_at,
            'version': opportunity.version,
        }

    @staticmethod
    def stage_change_to_domain(row: Mapping[str, Any]) -> StageChange:
        return StageChange(
            opportunity_id=row['opportunity_id'],
            old_stage=row['old_stage'],
            new_stage=row['new_stage'],
            old_probability=row['old_probability'],
            new_probability=row['new_probability'],
            actor_id=row.get('actor_id'),
            reason=row.get('reason'),
            changed_at=row['changed_at'],
        )

    @staticmethod
    def stage_change_to_record(change: StageChange) -> Dict[str, Any]:
        return {
            'opportunity_id': change.opportunity_id,
            'old_stage': change.old_stage.value,
            'new_stage': change.new_stage.value,
            'old_probability': change.old_probability,
            'new_probability': change.new_probability,
            'actor_id': change.actor_id,
            'reason': change.reason,
            'changed_at': change.changed_at,
        }

    @staticmethod
    def to_view(opportunity: Opportunity) -> OpportunityView:
        return OpportunityView(
            id=opportunity.id,
            title=opportunity.title,
            description=opportunity.description,
            value=opportunity.value,
            stage=opportunity.stage,
            stage_label=stage_policy.label(opportunity.stage),
            status=opportunity.status,
            probability=opportunity.probability,
            weighted_value=opportunity.weighted_value,
            expected_close_date=opportunity.expected_close_date,
            actual_close_date=opportunity.actual_close_date,
            company_id=opportunity.company_id,
            contact_id=opportunity.contact_id,
            owner_id=opportunity.owner_id,
            source=opportunity.source,
            competitors=opportunity.competitors,
            notes=opportunity.notes,
            can_move_stage=opportunity.status is Status.ACTIVE,
            version=opportunity.version,
            created_at=opportunity.created_at,
            updated_at=opportunity.updated_at,
        )
