import base64
import json
from typing import Any, Dict, List, Optional
import httpx

# Utils
from utils.log_utils import LogUtil

# Exceptions
from exceptions.flow_exception import ExternalCallException, NodeConfigurationException


class OpenAIResponse:
    """
    Normalized completion: the assistant text, the first tool call (if any)
    and, for audio generation, the base64 audio payload.
    """
    def __init__(
        self,
        content: str = "",
        tool_name: Optional[str] = None,
        tool_arguments: Optional[Dict[str, Any]] = None,
        audio_base64: Optional[str] = None
    ):
        self.content = content
        self.tool_name = tool_name
        self.tool_arguments = tool_arguments or {}
        self.audio_base64 = audio_base64


class OpenAIService:
    def __init__(self, log_util: LogUtil, api_url: str, default_api_key: str = "", timeout_seconds: float = 60.0):
        self.log_util = log_util
        self.api_url = api_url.rstrip("/")
        self.default_api_key = default_api_key
        self.timeout_seconds = timeout_seconds

    def _headers(self, api_key: Optional[str], node_id: Optional[str]) -> Dict[str, str]:
        key = api_key or self.default_api_key
        if not key:
            raise NodeConfigurationException("No OpenAI API key configured", node_id=node_id)
        return {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}

    async def _post(self, path: str, payload: Dict[str, Any], api_key: Optional[str], node_id: Optional[str]) -> httpx.Response:
        headers = self._headers(api_key, node_id)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(f"{self.api_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException:
            self.log_util.error(service_name="OpenAIService", message=f"[NODE_EXEC] Timeout calling OpenAI {path}")
            raise ExternalCallException(f"Timeout calling OpenAI {path}", node_id=node_id)
        except httpx.HTTPError as e:
            self.log_util.error(service_name="OpenAIService", message=f"[NODE_EXEC] Error calling OpenAI {path}: {str(e)}")
            raise ExternalCallException(f"Error calling OpenAI {path}: {str(e)}", node_id=node_id)

        if response.status_code != 200:
            self.log_util.error(
                service_name="OpenAIService",
                message=f"[NODE_EXEC] OpenAI {path} returned error: {response.status_code} - {response.text[:500]}"
            )
            raise ExternalCallException(f"OpenAI returned status {response.status_code}", node_id=node_id)
        return response

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        max_tokens: int,
        tools: Optional[List[Dict[str, Any]]] = None,
        api_key: Optional[str] = None,
        audio_voice: Optional[str] = None,
        node_id: Optional[str] = None
    ) -> OpenAIResponse:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = [{"type": "function", "function": tool} for tool in tools]
            payload["tool_choice"] = "auto"
        if audio_voice:
            payload["modalities"] = ["text", "audio"]
            payload["audio"] = {"voice": audio_voice, "format": "mp3"}

        response = await self._post("/chat/completions", payload, api_key, node_id)
        choices = response.json().get("choices") or []
        if not choices:
            raise ExternalCallException("OpenAI returned no choices", node_id=node_id)
        message = choices[0].get("message") or {}

        result = OpenAIResponse(content=message.get("content") or "")

        tool_calls = message.get("tool_calls") or []
        if tool_calls:
            function = tool_calls[0].get("function") or {}
            result.tool_name = function.get("name")
            try:
                result.tool_arguments = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError:
                self.log_util.warning(
                    service_name="OpenAIService",
                    message=f"[NODE_EXEC] Tool call '{result.tool_name}' returned malformed arguments"
                )
                result.tool_arguments = {}

        audio = message.get("audio") or {}
        if audio:
            result.audio_base64 = audio.get("data")
            if not result.content:
                result.content = audio.get("transcript") or ""
        return result

    async def text_to_speech(
        self,
        text: str,
        voice: Optional[str],
        model: str = "tts-1",
        api_key: Optional[str] = None,
        node_id: Optional[str] = None
    ) -> str:
        """
        Returns the synthesized speech as base64-encoded mp3
        """
        payload = {"model": model, "input": text, "voice": voice or "alloy", "response_format": "mp3"}
        response = await self._post("/audio/speech", payload, api_key, node_id)
        return base64.b64encode(response.content).decode("ascii")
