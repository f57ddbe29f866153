"""Gemini cloud adapter streaming generateContent responses over SSE."""

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

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_IGNORED_SSE_FIELDS = ("event:", "id:", "retry:")


class GeminiAdapter(BaseProviderAdapter):
    """Adapter for the Gemini API. Function calling is always available."""

    provider_name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = DEFAULT_BASE_URL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None
    ):
        if not api_key or not api_key.strip():
            raise ProviderError(
                "Gemini API key is not configured. Set GEMINI_API_KEY or run 'chatter config set-api-key'"
            )
        super().__init__(model, request_timeout, connect_timeout, client)
        self.api_key = api_key.strip()
        self.base_url = base_url.rstrip('/')

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "text/event-stream"
        }

    def build_request(
        self,
        messages: List[Message],
        system_instruction: Optional[str],
        tools: Optional[List[Dict[str, Any]]]
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        url = f"{self.base_url}/models/{self.model}:streamGenerateContent?alt=sse"
        body: Dict[str, Any] = {"contents": self.to_contents(messages)}
        if system_instruction and system_instruction.strip():
            body["system_instruction"] = {"parts": [{"text": system_instruction}]}
        if tools:
            body["tools"] = [{"functionDeclarations": tools}]
        return url, self._headers(), body

    @staticmethod
    def to_contents(messages: List[Message]) -> List[Dict[str, Any]]:
        """Convert the transcript into Gemini `contents`.

        System messages are local diagnostics and are not sent, and neither
        are assistant replies with no text and no calls since Gemini rejects
        empty parts. Consecutive user texts and consecutive tool results are
        each grouped into one user content.
        """
        contents: List[Dict[str, Any]] = []
        for message in messages:
            role = MessageRole(message.role)
            if role == MessageRole.SYSTEM:
                continue

            if role == MessageRole.USER:
                previous = contents[-1] if contents else None
                if previous and previous["role"] == "user" and all("text" in p for p in previous["parts"]):
                    previous["parts"].append({"text": message.content})
                else:
                    contents.append({"role": "user", "parts": [{"text": message.content}]})

            elif role == MessageRole.ASSISTANT:
                parts: List[Dict[str, Any]] = []
                if message.content:
                    parts.append({"text": message.content})
                for call in message.tool_calls:
                    parts.append({
                        "functionCall": {"id": call.call_id, "name": call.name, "args": call.arguments}
                    })
                if parts:
                    contents.append({"role": "model", "parts": parts})

            else:
                payload = message.tool_payload()
                part = {
                    "functionResponse": {
                        "id": message.tool_call_id,
                        "name": message.tool_name or "",
                        "response": payload
                    }
                }
                previous = contents[-1] if contents else None
                if previous and previous["role"] == "user" and all(
                    "functionResponse" in p for p in previous["parts"]
                ):
                    previous["parts"].append(part)
                else:
                    contents.append({"role": "user", "parts": [part]})

        return contents

    async def parse_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[StreamChunk]:
        """Parse SSE lines; each `data:` line holds one GenerateContentResponse."""
        async for line in lines:
            line = line.strip()
            if not line or line.startswith(":") or line.startswith(_IGNORED_SSE_FIELDS):
                continue
            if not line.startswith("data:"):
                continue

            data = line[5:].strip()
            if not data or data == "[DONE]":
                continue

            try:
                payload = json.loads(data)
            except json.JSONDecodeError as e:
                yield StreamChunk.failure(f"Malformed stream data from Gemini: {e}")
                return

            for chunk in self._chunks_from_payload(payload):
                yield chunk
                if chunk.error is not None:
                    return

    def _chunks_from_payload(self, payload: Any) -> List[StreamChunk]:
        if not isinstance(payload, dict):
            return [StreamChunk.failure("Malformed stream data from Gemini: expected an object")]

        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            return [StreamChunk.failure(f"Gemini error: {message}")]

        feedback = payload.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            return [StreamChunk.failure(f"Prompt blocked by Gemini: {feedback['blockReason']}")]

        candidates = payload.get("candidates") or []
        if not candidates:
            return []

        chunks: List[StreamChunk] = []
        parts = (candidates[0].get("content") or {}).get("parts") or []
        for part in parts:
            if part.get("thought"):
                continue
            if part.get("text"):
                chunks.append(StreamChunk.text_delta(part["text"]))
            function_call = part.get("functionCall")
            if function_call and function_call.get("name"):
                call = build_tool_call(function_call["name"], function_call.get("args"), function_call.get("id"))
                chunks.append(StreamChunk.tool_request([call]))
        return chunks

    async def health_check(self) -> Dict[str, Any]:
        """Fetch the model resource to confirm key and model are valid."""
        url = f"{self.base_url}/models/{self.model}"
        try:
            response = await self.client.get(url, headers={"x-goog-api-key": self.api_key})
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

        self._record_health(True)
        return {"status": "healthy", "provider": self.provider_name, "model": self.model}
