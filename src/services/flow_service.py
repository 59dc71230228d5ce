from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import ValidationError

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Services
from services.flow_graph_service import FlowGraphService
from services.variable_service import VariableService

# Models
from models.flow_data import FlowData
from models.flow_trigger_data import FlowTriggerData

# Exceptions
from exceptions.flow_exception import FlowServiceException, FlowNotFoundException, FlowValidationException

# Keys of an editor payload that update_flow may change
EDITABLE_FIELDS = ("name", "description", "variables", "viewport")


def _validation_problems(error: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}"
        for item in error.errors()
    ]


class FlowService:
    """
    Flow and trigger management. The editor writes the draft snapshot; publishing
    validates it and copies it over the snapshot the runtime executes.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        flow_graph_service: FlowGraphService,
        variable_service: VariableService
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.flow_graph_service = flow_graph_service
        self.variable_service = variable_service

    async def create_flow(self, organization_id: str, flow_data: dict) -> FlowData:
        """
        Store a new flow as a draft. The published snapshot starts empty.
        """
        try:
            flow = FlowData.model_validate({
                "organization_id": organization_id,
                "name": flow_data.get("name") or "Untitled flow",
                "description": flow_data.get("description"),
                "draft_nodes": flow_data.get("nodes", []),
                "draft_edges": flow_data.get("edges", []),
                "variables": flow_data.get("variables", []),
                "viewport": flow_data.get("viewport") or {},
                "created_by_prompt": flow_data.get("created_by_prompt"),
            })
        except ValidationError as e:
            raise FlowValidationException("Invalid flow payload", problems=_validation_problems(e))

        flow.variables = self.variable_service.normalize_flow_variables(flow.variables)
        flow.is_published = False
        flow.created_at = flow.updated_at = datetime.utcnow()

        saved_flow = await self.flow_db.create_flow(flow)
        if saved_flow is None:
            raise FlowServiceException("Failed to create flow")
        self.log_util.info(
            service_name="FlowService",
            message=f"Created flow {saved_flow.id} '{saved_flow.name}' for organization {organization_id}"
        )
        return saved_flow

    async def get_flow(self, flow_id: str) -> FlowData:
        flow = await self.flow_db.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundException(f"Flow {flow_id} not found")
        return flow

    async def list_flows(self, organization_id: str) -> List[FlowData]:
        return await self.flow_db.list_flows(organization_id)

    async def update_flow(self, flow_id: str, flow_data: dict) -> FlowData:
        """
        Replace the draft snapshot and editable metadata. The published snapshot
        is left untouched.
        """
        flow = await self.get_flow(flow_id)

        candidate: Dict[str, Any] = flow.model_dump()
        for key in EDITABLE_FIELDS:
            if key in flow_data:
                candidate[key] = flow_data[key]
        if "nodes" in flow_data:
            candidate["draft_nodes"] = flow_data["nodes"]
        if "edges" in flow_data:
            candidate["draft_edges"] = flow_data["edges"]

        try:
            updated = FlowData.model_validate(candidate)
        except ValidationError as e:
            raise FlowValidationException("Invalid flow payload", problems=_validation_problems(e))
        updated.variables = self.variable_service.normalize_flow_variables(updated.variables)

        fields = updated.model_dump(include={"name", "description", "variables", "viewport", "draft_nodes", "draft_edges"})
        saved_flow = await self.flow_db.update_flow(flow_id, fields)
        if saved_flow is None:
            raise FlowServiceException(f"Failed to update flow {flow_id}")
        self.log_util.info(service_name="FlowService", message=f"Updated draft of flow {flow_id}")
        return saved_flow

    async def validate_flow(self, flow_id: str) -> List[str]:
        flow = await self.get_flow(flow_id)
        return self.flow_graph_service.validate_flow(flow.draft_nodes, flow.draft_edges, flow.variables)

    async def publish_flow(self, flow_id: str) -> FlowData:
        flow = await self.get_flow(flow_id)
        problems = self.flow_graph_service.validate_flow(flow.draft_nodes, flow.draft_edges, flow.variables)
        if problems:
            self.log_util.warning(
                service_name="FlowService",
                message=f"Publish of flow {flow_id} rejected with {len(problems)} problem(s): {problems}"
            )
            raise FlowValidationException(f"Flow {flow_id} cannot be published", problems=problems)

        # Dumping yields fresh structures, so the two snapshots never share state
        fields = {
            "nodes": [node.model_dump() for node in flow.draft_nodes],
            "edges": [edge.model_dump() for edge in flow.draft_edges],
            "is_published": True,
            "published_at": datetime.utcnow(),
        }
        saved_flow = await self.flow_db.update_flow(flow_id, fields)
        if saved_flow is None:
            raise FlowServiceException(f"Failed to publish flow {flow_id}")
        self.log_util.info(service_name="FlowService", message=f"Published flow {flow_id} ({len(saved_flow.nodes)} nodes)")
        return saved_flow

    async def unpublish_flow(self, flow_id: str) -> FlowData:
        await self.get_flow(flow_id)
        saved_flow = await self.flow_db.update_flow(flow_id, {"is_published": False})
        if saved_flow is None:
            raise FlowServiceException(f"Failed to unpublish flow {flow_id}")
        self.log_util.info(service_name="FlowService", message=f"Unpublished flow {flow_id}")
        return saved_flow

    async def delete_flow(self, flow_id: str) -> bool:
        await self.get_flow(flow_id)
        # Triggers of a deleted flow would be orphaned
        removed_triggers = await self.flow_db.delete_triggers_by_flow(flow_id)
        deleted = await self.flow_db.delete_flow(flow_id)
        if not deleted:
            raise FlowServiceException(f"Failed to delete flow {flow_id}")
        self.log_util.info(
            service_name="FlowService",
            message=f"Deleted flow {flow_id} and {removed_triggers} trigger(s)"
        )
        return True

    # Triggers
    async def save_trigger(self, trigger_data: dict, trigger_id: Optional[str] = None) -> FlowTriggerData:
        try:
            trigger = FlowTriggerData.model_validate({**trigger_data, "id": trigger_id})
        except ValidationError as e:
            raise FlowValidationException("Invalid trigger payload", problems=_validation_problems(e))

        flow = await self.flow_db.get_flow(trigger.flow_id)
        if flow is None:
            raise FlowValidationException(
                f"Trigger references unknown flow {trigger.flow_id}",
                problems=[f"flow_id: flow {trigger.flow_id} does not exist"]
            )
        if flow.organization_id != trigger.organization_id:
            raise FlowValidationException(
                "Trigger and flow belong to different organizations",
                problems=[f"organization_id: flow {flow.id} belongs to {flow.organization_id}"]
            )
        if trigger.type == "inactivity" and not trigger.rules_of_type("inactivity"):
            raise FlowValidationException(
                "Inactivity trigger needs an inactivity rule",
                problems=["conditions.rules: no rule of type inactivity"]
            )

        if trigger_id and await self.flow_db.get_trigger(trigger_id) is None:
            raise FlowNotFoundException(f"Trigger {trigger_id} not found")

        saved_trigger = await self.flow_db.save_trigger(trigger)
        if saved_trigger is None:
            raise FlowServiceException("Failed to save trigger")
        self.log_util.info(
            service_name="FlowService",
            message=f"Saved {saved_trigger.type} trigger {saved_trigger.id} for flow {saved_trigger.flow_id}"
        )
        return saved_trigger

    async def get_trigger(self, trigger_id: str) -> FlowTriggerData:
        trigger = await self.flow_db.get_trigger(trigger_id)
        if trigger is None:
            raise FlowNotFoundException(f"Trigger {trigger_id} not found")
        return trigger

    async def list_triggers(self, flow_id: str) -> List[FlowTriggerData]:
        await self.get_flow(flow_id)
        return await self.flow_db.list_triggers(flow_id)

    async def delete_trigger(self, trigger_id: str) -> bool:
        deleted = await self.flow_db.delete_trigger(trigger_id)
        if not deleted:
            raise FlowNotFoundException(f"Trigger {trigger_id} not found")
        self.log_util.info(service_name="FlowService", message=f"Deleted trigger {trigger_id}")
        return True
