import json
from typing import Any, Dict, List, Optional, Tuple
import httpx

# Utils
from utils.log_utils import LogUtil

# Exceptions
from exceptions.flow_exception import NodeConfigurationException, ExternalCallException

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")


class HttpRequestService:
    """
    Performs the HTTP call configured on a request node.
    Configuration problems raise NodeConfigurationException, transport and
    non-2xx failures raise ExternalCallException.
    """

    def __init__(self, log_util: LogUtil, timeout_seconds: float = 15.0):
        self.log_util = log_util
        self.timeout_seconds = timeout_seconds

    def build_request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        params: List[Tuple[str, str]],
        body: Optional[str],
        body_type: str,
        node_id: Optional[str] = None
    ) -> Dict[str, Any]:
        method = (method or "GET").upper()
        if method not in ALLOWED_METHODS:
            raise NodeConfigurationException(f"Unsupported HTTP method '{method}'", node_id=node_id)

        try:
            parsed_url = httpx.URL(url.strip())
        except (httpx.InvalidURL, TypeError, ValueError) as e:
            raise NodeConfigurationException(f"Invalid URL '{url}': {str(e)}", node_id=node_id)
        if parsed_url.scheme not in ("http", "https") or not parsed_url.host:
            raise NodeConfigurationException(f"Invalid URL '{url}'", node_id=node_id)

        request: Dict[str, Any] = {
            "method": method,
            "url": parsed_url,
            "headers": headers,
            "params": params,
        }

        if body and body_type != "none" and method not in ("GET", "HEAD"):
            if body_type == "json":
                try:
                    request["json"] = json.loads(body)
                except json.JSONDecodeError as e:
                    raise NodeConfigurationException(f"Invalid JSON body: {str(e)}", node_id=node_id)
            elif body_type == "form":
                try:
                    form = json.loads(body)
                except json.JSONDecodeError:
                    form = dict(pair.split("=", 1) for pair in body.split("&") if "=" in pair)
                if not isinstance(form, dict):
                    raise NodeConfigurationException("Form body must be an object or key=value pairs", node_id=node_id)
                request["data"] = form
            else:
                request["content"] = body
        return request

    async def send(self, request: Dict[str, Any], node_id: Optional[str] = None) -> Tuple[int, Any]:
        """
        Returns (status_code, payload) where payload is the decoded JSON response,
        or the raw text when the response is not JSON.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.request(**request)
        except httpx.TimeoutException:
            self.log_util.error(
                service_name="HttpRequestService",
                message=f"[NODE_EXEC] Timeout calling {request.get('method')} {request.get('url')}"
            )
            raise ExternalCallException(f"Timeout calling {request.get('url')}", node_id=node_id)
        except httpx.HTTPError as e:
            self.log_util.error(
                service_name="HttpRequestService",
                message=f"[NODE_EXEC] Error calling {request.get('method')} {request.get('url')}: {str(e)}"
            )
            raise ExternalCallException(f"Error calling {request.get('url')}: {str(e)}", node_id=node_id)

        if response.status_code < 200 or response.status_code >= 300:
            self.log_util.error(
                service_name="HttpRequestService",
                message=f"[NODE_EXEC] {request.get('url')} returned {response.status_code} - {response.text[:500]}"
            )
            raise ExternalCallException(f"Request returned status {response.status_code}", node_id=node_id)

        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        return response.status_code, payload
