from typing import Any, Dict, List, Optional
import httpx

# Utils
from utils.log_utils import LogUtil

# Exceptions
from exceptions.flow_exception import ExternalCallException


class AgentService:
    """
    Client for the external AI agent service used by agenteia nodes.
    """

    def __init__(self, log_util: LogUtil, agent_service_url: str, timeout_seconds: float = 30.0):
        self.log_util = log_util
        self.agent_service_url = agent_service_url
        self.timeout_seconds = timeout_seconds

    async def respond(
        self,
        organization_id: str,
        chat_id: str,
        customer_id: Optional[str],
        prompt_id: Optional[str],
        messages: List[Dict[str, Any]],
        variables: Dict[str, str],
        node_id: Optional[str] = None
    ) -> str:
        request_json = {
            "organization_id": organization_id,
            "chat_id": chat_id,
            "customer_id": customer_id,
            "prompt_id": prompt_id,
            "messages": messages,
            "variables": variables,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.agent_service_url,
                    json=request_json,
                    headers={"Content-Type": "application/json"}
                )
        except httpx.TimeoutException:
            self.log_util.error(service_name="AgentService", message="[NODE_EXEC] Timeout calling agent service")
            raise ExternalCallException("Timeout calling agent service", node_id=node_id)
        except httpx.HTTPError as e:
            self.log_util.error(service_name="AgentService", message=f"[NODE_EXEC] Error calling agent service: {str(e)}")
            raise ExternalCallException(f"Error calling agent service: {str(e)}", node_id=node_id)

        if response.status_code != 200:
            self.log_util.error(
                service_name="AgentService",
                message=f"[NODE_EXEC] Agent service returned error: {response.status_code} - {response.text}"
            )
            raise ExternalCallException(f"Agent service returned status {response.status_code}", node_id=node_id)

        response_data = response.json()
        return str(response_data.get("response") or response_data.get("message") or "")
