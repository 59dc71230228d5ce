from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_service import FlowService

# Exceptions
from exceptions.flow_exception import FlowException, FlowValidationException


def _organization_id(request: Request) -> str:
    organization_id = request.headers.get("x-organization-id")
    if not organization_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return organization_id


def _to_http_exception(e: FlowException) -> HTTPException:
    if isinstance(e, FlowValidationException):
        return HTTPException(status_code=e.status_code, detail={"message": e.message, "problems": e.problems})
    return HTTPException(status_code=e.status_code, detail=e.message)


def create_flow_api(
    log_util: LogUtil,
    flow_service: FlowService
) -> APIRouter:
    router = APIRouter(
        prefix="/flow",
        tags=["flow"],
    )

    @router.post("/create")
    async def create_flow(request: Request, flow_data: dict):
        organization_id = _organization_id(request)
        try:
            return await flow_service.create_flow(organization_id=organization_id, flow_data=flow_data)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error creating flow: {e.message}")
            raise _to_http_exception(e)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error creating flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/list")
    async def get_flows_list(request: Request):
        organization_id = _organization_id(request)
        try:
            return await flow_service.list_flows(organization_id=organization_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flows list: {e.message}")
            raise _to_http_exception(e)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flows list: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/detail/{flow_id}")
    async def get_flow_detail(flow_id: str):
        try:
            return await flow_service.get_flow(flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow detail: {e.message}")
            raise _to_http_exception(e)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow detail: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.put("/update/{flow_id}")
    async def update_flow(flow_id: str, flow_data: dict):
        try:
            return await flow_service.update_flow(flow_id=flow_id, flow_data=flow_data)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error updating flow: {e.message}")
            raise _to_http_exception(e)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error updating flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/validate/{flow_id}")
    async def validate_flow(flow_id: str):
        """
        Structural problems of the draft; an empty list means it can be published
        """
        try:
            problems = await flow_service.validate_flow(flow_id=flow_id)
            return {"flow_id": flow_id, "valid": not problems, "problems": problems}
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error validating flow: {e.message}")
            raise _to_http_exception(e)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error validating flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/publish/{flow_id}")
    async def publish_flow(flow_id: str):
        try:
            return await flow_service.publish_flow(flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error publishing flow: {e.message}")
            raise _to_http_exception(e)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error publishing flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/unpublish/{flow_id}")
    async def unpublish_flow(flow_id: str):
        try:
            return await flow_service.unpublish_flow(flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error unpublishing flow: {e.message}")
            raise _to_http_exception(e)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error unpublishing flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.delete("/delete/{flow_id}")
    async def delete_flow(flow_id: str):
        try:
            deleted = await flow_service.delete_flow(flow_id=flow_id)
            return {"flow_id": flow_id, "deleted": deleted}
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error deleting flow: {e.message}")
            raise _to_http_exception(e)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error deleting flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
