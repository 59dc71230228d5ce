from fastapi import APIRouter
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_service import FlowService

# Exceptions
from exceptions.flow_exception import FlowException, FlowValidationException


def create_trigger_api(
    log_util: LogUtil,
    flow_service: FlowService
) -> APIRouter:
    router = APIRouter(
        prefix="/trigger",
        tags=["trigger"],
    )

    def _raise(action: str, e: Exception):
        if isinstance(e, FlowValidationException):
            log_util.error(service_name="TriggerAPI", message=f"Error {action}: {e.message} {e.problems}")
            raise HTTPException(status_code=e.status_code, detail={"message": e.message, "problems": e.problems})
        if isinstance(e, FlowException):
            log_util.error(service_name="TriggerAPI", message=f"Error {action}: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        log_util.error(service_name="TriggerAPI", message=f"Error {action}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    @router.post("/create")
    async def create_trigger(trigger_data: dict):
        """
        Request body: {flow_id, organization_id, type, conditions: {operator, rules}, is_active, priority}
        """
        try:
            return await flow_service.save_trigger(trigger_data)
        except Exception as e:
            _raise("creating trigger", e)

    @router.put("/update/{trigger_id}")
    async def update_trigger(trigger_id: str, trigger_data: dict):
        try:
            return await flow_service.save_trigger(trigger_data, trigger_id=trigger_id)
        except Exception as e:
            _raise("updating trigger", e)

    @router.get("/detail/{trigger_id}")
    async def get_trigger(trigger_id: str):
        try:
            return await flow_service.get_trigger(trigger_id)
        except Exception as e:
            _raise("getting trigger", e)

    @router.get("/flow/{flow_id}")
    async def list_triggers(flow_id: str):
        try:
            return await flow_service.list_triggers(flow_id)
        except Exception as e:
            _raise("listing triggers", e)

    @router.delete("/delete/{trigger_id}")
    async def delete_trigger(trigger_id: str):
        try:
            deleted = await flow_service.delete_trigger(trigger_id)
            return {"trigger_id": trigger_id, "deleted": deleted}
        except Exception as e:
            _raise("deleting trigger", e)

    return router
