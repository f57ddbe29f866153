"""Ollama local adapter streaming /api/chat NDJSON responses."""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from chatter.models.message import Message, MessageRole
from chatter.models.stream_chunk import StreamChunk
from chatter.services.base_provider_adapter import (
    BaseProviderAdapter, ProviderError, build_tool_call,
    DEFAULT_REQUEST_TIMEOUT, DEFAULT_CONNECT_TIMEOUT
)


logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:11434"


class OllamaAdapter(BaseProviderAdapter):
    """Adapter for a local Ollama server.

    Whether the model can call functions is a runtime property: it is asked
    from the server by ``refresh_capabilities`` unless configuration forces
    it one way or the other.
    """

    provider_name = "ollama"

    def __init__(
        self,
        model: str,
        endpoint: str = DEFAULT_ENDPOINT,
        supports_function_calling: Optional[bool] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(model, request_timeout, connect_timeout, client)
        endpoint = (endpoint or "").strip()
        if not endpoint:
            raise ProviderError("Ollama endpoint cannot be empty")
        if "://" not in endpoint:
            endpoint = f"http://{endpoint}"
        self.endpoint = endpoint.rstrip('/')
        self._forced_function_calling = supports_function_calling
        self._function_calling = bool(supports_function_calling)

    @property
    def supports_function_calling(self) -> bool:
        return self._function_calling

    def set_model(self, model: str) -> None:
        super().set_model(model)
        if self._forced_function_calling is None:
            # Capabilities belong to the previous model until refreshed
            self._function_calling = False

    async def refresh_capabilities(self) -> bool:
        """Ask the server whether the model lists the `tools` capability."""
        if self._forced_function_calling is not None:
            self._function_calling = self._forced_function_calling
            return self._function_calling

        try:
            response = await self.client.post(f"{self.endpoint}/api/show", json={"model": self.model})
        except httpx.HTTPError as e:
            self.logger.warning(f"Could not query capabilities of {self.model}: {e}")
            self._function_calling = False
            return False

        if not response.is_success:
            self.logger.warning(
                f"Capability query for {self.model} failed: {response.status_code} - "
                f"{self._error_detail(response.content)}"
            )
            self._function_calling = False
            return False

        try:
            capabilities = response.json().get("capabilities") or []
        except (json.JSONDecodeError, AttributeError):
            capabilities = []

        self._function_calling = "tools" in capabilities
        self.logger.info(
            f"Model {self.model} function calling: {'supported' if self._function_calling else 'not supported'}"
        )
        return self._function_calling

    def build_request(
        self,
        messages: List[Message],
        system_instruction: Optional[str],
        tools: Optional[List[Dict[str, Any]]]
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": self.to_messages(messages, system_instruction),
            "stream": True
        }
        if tools:
            body["tools"] = [{"type": "function", "function": declaration} for declaration in tools]
        return f"{self.endpoint}/api/chat", {"Content-Type": "application/json"}, body

    @staticmethod
    def to_messages(messages: List[Message], system_instruction: Optional[str] = None) -> List[Dict[str, Any]]:
        """Convert the transcript into Ollama chat messages, system instruction first."""
        converted: List[Dict[str, Any]] = []
        if system_instruction and system_instruction.strip():
            converted.append({"role": "system", "content": system_instruction})

        for message in messages:
            role = MessageRole(message.role)
            if role == MessageRole.SYSTEM:
                continue

            entry: Dict[str, Any] = {"role": role.value, "content": message.content}
            if role == MessageRole.ASSISTANT and message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "type": "function",
                        "id": call.call_id,
                        "function": {"name": call.name, "arguments": call.arguments}
                    }
                    for call in message.tool_calls
                ]
            elif role == MessageRole.TOOL:
                entry["tool_name"] = message.tool_name
                entry["tool_call_id"] = message.tool_call_id
            converted.append(entry)

        return converted

    async def parse_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[StreamChunk]:
        """Parse NDJSON lines; the object with `done: true` ends the stream."""
        async for line in lines:
            line = line.strip()
            if not line:
                continue

            try:
                payload = json.loads(line)
            except json.JSONDecodeError as e:
                yield StreamChunk.failure(f"Malformed stream data from Ollama: {e}")
                return

            if not isinstance(payload, dict):
                yield StreamChunk.failure("Malformed stream data from Ollama: expected an object")
                return

            if payload.get("error"):
                yield StreamChunk.failure(f"Ollama error: {payload['error']}")
                return

            message = payload.get("message") or {}
            if message.get("content"):
                yield StreamChunk.text_delta(message["content"])

            calls = []
            for raw_call in message.get("tool_calls") or []:
                if raw_call.get("type", "function") != "function":
                    continue
                function = raw_call.get("function") or {}
                if not function.get("name"):
                    continue
                calls.append(build_tool_call(function["name"], function.get("arguments"), raw_call.get("id")))
            if calls:
                yield StreamChunk.tool_request(calls)

            if payload.get("done"):
                yield StreamChunk.end()
                return

    async def health_check(self) -> Dict[str, Any]:
        """Check the server is up and has the model pulled."""
        try:
            response = await self.client.get(f"{self.endpoint}/api/tags")
        except httpx.HTTPError as e:
            self._record_health(False)
            return {"status": "unhealthy", "provider": self.provider_name, "model": self.model, "error": str(e)}

        if not response.is_success:
            self._record_health(False)
            return {
                "status": "unhealthy",
                "provider": self.provider_name,
                "model": self.model,
                "error": f"{response.status_code} - {self._error_detail(response.content)}"
            }

        names = {entry.get("name", "") for entry in response.json().get("models", [])}
        available = self.model in names or f"{self.model}:latest" in names
        self._record_health(available)
        result = {
            "status": "healthy" if available else "degraded",
            "provider": self.provider_name,
            "model": self.model,
            "function_calling": self.supports_function_calling
        }
        if not available:
            result["error"] = f"Model {self.model} is not available on {self.endpoint}; run 'ollama pull {self.model}'"
        return result
