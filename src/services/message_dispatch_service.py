"""
Message Dispatch Service
Delivers outbound flow messages to the channel service.
"""
import logging
import httpx
import tenacity

# Utils
from utils.log_utils import LogUtil

# Models
from models.request.outbound_message_request import OutboundMessageRequest

# Exceptions
from exceptions.flow_exception import ExternalCallException


class MessageDispatchService:
    def __init__(self, log_util: LogUtil, channel_service_url: str, timeout_seconds: float = 15.0):
        self.log_util = log_util
        self.channel_service_url = channel_service_url
        self.timeout_seconds = timeout_seconds

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=0.5, max=5),
        before_sleep=tenacity.before_sleep_log(logging.getLogger("interflow_flow_service"), logging.WARNING),
        reraise=True
    )
    async def _post(self, request_json: dict) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(
                self.channel_service_url,
                json=request_json,
                headers={"Content-Type": "application/json"}
            )

    async def send_message(self, message: OutboundMessageRequest) -> None:
        request_json = message.model_dump(mode="json", exclude_none=True)
        try:
            response = await self._post(request_json)
        except httpx.HTTPError as e:
            self.log_util.error(
                service_name="MessageDispatchService",
                message=f"[NODE_EXEC] Error sending {message.message_type} message to chat {message.chat_id}: {str(e)}"
            )
            raise ExternalCallException(f"Channel service unreachable: {str(e)}", node_id=message.node_id)

        if response.status_code < 200 or response.status_code >= 300:
            self.log_util.error(
                service_name="MessageDispatchService",
                message=f"[NODE_EXEC] Channel service returned error: {response.status_code} - {response.text}"
            )
            raise ExternalCallException(f"Channel service returned status {response.status_code}", node_id=message.node_id)

        self.log_util.info(
            service_name="MessageDispatchService",
            message=f"[NODE_EXEC] Sent {message.message_type} message to chat {message.chat_id} (node {message.node_id})"
        )
