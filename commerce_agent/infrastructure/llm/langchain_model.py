from typing import Dict, Any, List, AsyncIterator
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
import structlog

from commerce_agent.domain.models.action import ToolSpec
from commerce_agent.domain.models.conversation_state import ToolCall
from commerce_agent.infrastructure.llm.model_provider import ModelProvider, ModelResponse

logger = structlog.get_logger(__name__)


def to_langchain_messages(messages: List[Dict[str, Any]]) -> List[BaseMessage]:
    """Convert role/content dicts into langchain-core messages"""

    converted: List[BaseMessage] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "user":
            converted.append(HumanMessage(content=content))
        elif role == "assistant":
            tool_calls = [
                {"id": call["id"], "name": call["name"], "args": call.get("args", {})}
                for call in message.get("tool_calls") or []
            ]
            converted.append(AIMessage(content=content, tool_calls=tool_calls))
        elif role == "tool":
            converted.append(ToolMessage(content=content, tool_call_id=message.get("tool_call_id") or ""))
        else:
            logger.debug("Skipping message with unknown role", role=role)
    return converted


def to_openai_tools(tools: List[ToolSpec]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": tool.name, "description": tool.description, "parameters": tool.parameters},
        }
        for tool in tools
    ]


def _text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    return str(content or "")


def _tool_calls(reply: Any) -> List[ToolCall]:
    return [
        ToolCall(id=call.get("id") or f"call_{index}", name=call["name"], args=call.get("args") or {})
        for index, call in enumerate(getattr(reply, "tool_calls", None) or [])
    ]


class LangChainModelProvider(ModelProvider):
    """Adapts any langchain-core chat model that supports bind_tools"""

    def __init__(self, chat_model: BaseChatModel):
        self.chat_model = chat_model

    def _bound(self, tools: List[ToolSpec]) -> Any:
        if not tools:
            return self.chat_model
        return self.chat_model.bind_tools(to_openai_tools(tools))

    async def invoke(self, messages: List[Dict[str, Any]], tools: List[ToolSpec]) -> ModelResponse:
        reply = await self._bound(tools).ainvoke(to_langchain_messages(messages))
        return ModelResponse(content=_text(reply.content), tool_calls=_tool_calls(reply))

    async def astream(self, messages: List[Dict[str, Any]], tools: List[ToolSpec]) -> AsyncIterator[ModelResponse]:
        """Content deltas as they arrive; tool calls once the stream has been aggregated"""

        gathered = None
        async for chunk in self._bound(tools).astream(to_langchain_messages(messages)):
            gathered = chunk if gathered is None else gathered + chunk
            text = _text(chunk.content)
            if text:
                yield ModelResponse(content=text)

        tool_calls = _tool_calls(gathered)
        if tool_calls:
            yield ModelResponse(tool_calls=tool_calls)
