from abc import ABC, abstractmethod
from typing import Dict, Any, List, AsyncIterator
from pydantic import BaseModel, Field

from commerce_agent.domain.models.action import ToolSpec
from commerce_agent.domain.models.conversation_state import ToolCall


class ModelResponse(BaseModel):
    """Model output: free text and/or structured tool calls"""
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    # Content pieces in arrival order when the response was streamed
    chunks: List[str] = Field(default_factory=list)


class ModelProvider(ABC):
    """Chat model contract used for action selection"""

    @abstractmethod
    async def invoke(self, messages: List[Dict[str, Any]], tools: List[ToolSpec]) -> ModelResponse:
        """Single completion with an optional tool menu"""

    async def astream(self, messages: List[Dict[str, Any]], tools: List[ToolSpec]) -> AsyncIterator[ModelResponse]:
        """Incremental completion

        Each delta carries a content piece, tool calls, or both. Providers
        without native streaming yield the whole response as one delta.
        """

        yield await self.invoke(messages, tools)


async def gather_stream(provider: ModelProvider, messages: List[Dict[str, Any]], tools: List[ToolSpec]) -> ModelResponse:
    """Drain ``astream`` into one response, keeping the chunk boundaries"""

    chunks: List[str] = []
    tool_calls: List[ToolCall] = []
    async for delta in provider.astream(messages, tools):
        if delta.content:
            chunks.append(delta.content)
        tool_calls.extend(delta.tool_calls)
    return ModelResponse(content="".join(chunks), tool_calls=tool_calls, chunks=chunks)
