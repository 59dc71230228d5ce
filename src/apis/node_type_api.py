from typing import Optional
from fastapi import APIRouter
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.node_type_registry import NodeTypeRegistry, VALID_CATEGORIES


def create_node_type_api(
    log_util: LogUtil,
    node_type_registry: NodeTypeRegistry
) -> APIRouter:
    router = APIRouter(
        prefix="/node-types",
        tags=["node-types"],
    )

    @router.get("/list")
    async def get_node_types(category: Optional[str] = None):
        """
        Get all node types, optionally filtered by category
        """
        if category is not None and category not in VALID_CATEGORIES:
            log_util.warning(service_name="NodeTypeAPI", message=f"Unknown node category requested: {category}")
            raise HTTPException(status_code=400, detail=f"Invalid category. Must be one of: {', '.join(VALID_CATEGORIES)}")
        return node_type_registry.list_node_types(category=category)

    @router.get("/{node_type}")
    async def get_node_type(node_type: str):
        """
        Get one node type (e.g., "text", "input", "openai")
        """
        detail = node_type_registry.get_node_type(node_type)
        if detail is None:
            raise HTTPException(status_code=404, detail=f"Node type '{node_type}' not found")
        return detail

    return router
