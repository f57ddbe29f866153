"""Base streaming provider adapter with common HTTP functionality."""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from chatter.models.message import Message
from chatter.models.stream_chunk import ChunkKind, StreamChunk
from chatter.models.tool_call import ToolCall
from chatter.services.tool_registry import ToolArgumentError, extract_argument_map


logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 300.0
DEFAULT_CONNECT_TIMEOUT = 30.0


class ProviderError(Exception):
    """Raised when an adapter cannot be constructed or configured."""
    pass


def build_tool_call(name: str, raw_arguments: Any, call_id: Optional[str] = None) -> ToolCall:
    """Build a ToolCall from provider output.

    Unparseable arguments do not fail the stream; the call carries the
    problem and the registry reports it back to the model as a failed result.
    """
    kwargs: Dict[str, Any] = {"name": name}
    if call_id:
        kwargs["call_id"] = str(call_id)
    try:
        kwargs["arguments"] = extract_argument_map(raw_arguments)
    except ToolArgumentError as e:
        kwargs["argument_error"] = str(e)
    return ToolCall(**kwargs)


class ProviderStatus(str, Enum):
    """Provider health status."""

    UNKNOWN = "unknown"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class BaseProviderAdapter(ABC):
    """Base class for streaming model providers.

    Subclasses describe how a request is built and how the response body is
    parsed; this class owns the HTTP client, status handling and the
    conversion of transport failures into error chunks.
    """

    provider_name = "base"

    def __init__(
        self,
        model: str,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None
    ):
        """Initialize the base adapter.

        Args:
            model: Model name used for requests
            request_timeout: Overall request timeout in seconds
            connect_timeout: Connection timeout in seconds
            client: Optional preconfigured HTTP client, owned by the caller
        """
        if not model or not model.strip():
            raise ProviderError("Model name cannot be empty")
        self.model = model.strip()
        self.logger = logging.getLogger(f"{__name__}.{self.provider_name}")
        self._timeout = httpx.Timeout(request_timeout, connect=connect_timeout)
        self._client = client
        self._owns_client = client is None
        self._health_status = ProviderStatus.UNKNOWN
        self._last_health_check: Optional[datetime] = None

    @property
    def supports_function_calling(self) -> bool:
        """Whether tool declarations are sent and tool calls surfaced."""
        return True

    @property
    def health_status(self) -> ProviderStatus:
        return self._health_status

    async def refresh_capabilities(self) -> bool:
        """Re-detect provider capabilities; returns the function calling flag."""
        return self.supports_function_calling

    def set_model(self, model: str) -> None:
        if not model or not model.strip():
            raise ProviderError("Model name cannot be empty")
        self.model = model.strip()

    @property
    def client(self) -> httpx.AsyncClient:
        """HTTP client, created on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    @abstractmethod
    def build_request(
        self,
        messages: List[Message],
        system_instruction: Optional[str],
        tools: Optional[List[Dict[str, Any]]]
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        """Build the streaming request.

        Args:
            messages: Transcript to send, oldest first
            system_instruction: Optional system instruction
            tools: Function declarations, or None when tools are not offered

        Returns:
            Tuple of URL, headers and JSON body
        """
        pass

    @abstractmethod
    def parse_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[StreamChunk]:
        """Translate response body lines into stream chunks."""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Check that the provider is reachable and serves the model.

        Returns:
            Health status information
        """
        pass

    async def start_turn(
        self,
        messages: List[Message],
        system_instruction: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[StreamChunk]:
        """Stream one model response.

        The iterator ends after the first ``end`` or ``error`` chunk. Tool
        declarations are dropped when the provider cannot call functions.
        Closing the iterator closes the HTTP response.
        """
        if tools and not self.supports_function_calling:
            self.logger.info(f"Model {self.model} does not support function calling; sending no tools")
            tools = None

        url, headers, body = self.build_request(messages, system_instruction, tools or None)
        self.logger.debug(f"Starting stream to {url} with {len(messages)} messages")

        try:
            async with self.client.stream("POST", url, headers=headers, json=body) as response:
                if not response.is_success:
                    text = await response.aread()
                    yield StreamChunk.failure(
                        f"Request failed: {response.status_code} - {self._error_detail(text)}"
                    )
                    return

                async for chunk in self.parse_stream(response.aiter_lines()):
                    yield chunk
                    if chunk.kind in (ChunkKind.END, ChunkKind.ERROR):
                        return

                yield StreamChunk.end()

        except httpx.TimeoutException:
            yield StreamChunk.failure(f"Request to {self.provider_name} timed out")
        except httpx.ConnectError as e:
            yield StreamChunk.failure(f"Connection failed: {e}")
        except httpx.HTTPError as e:
            self.logger.warning(f"Stream error from {self.provider_name}: {e}")
            yield StreamChunk.failure(f"Stream error: {e}")

    @staticmethod
    def _error_detail(raw: bytes) -> str:
        """Best-effort error message from a non-2xx response body."""
        text = raw.decode("utf-8", errors="replace").strip()
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text or "no response body"
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
        return text

    def _record_health(self, healthy: bool) -> None:
        self._health_status = ProviderStatus.AVAILABLE if healthy else ProviderStatus.UNAVAILABLE
        self._last_health_check = datetime.now(timezone.utc)

    def get_provider_info(self) -> Dict[str, Any]:
        """Provider information for the /info command."""
        return {
            "provider": self.provider_name,
            "model": self.model,
            "supports_function_calling": self.supports_function_calling,
            "status": self._health_status.value,
            "last_health_check": self._last_health_check.isoformat() if self._last_health_check else None
        }

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"model='{self.model}', "
            f"function_calling={self.supports_function_calling}, "
            f"health='{self._health_status.value}'"
            f")"
        )
