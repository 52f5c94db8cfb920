"""
Схемы обмена с /api/chat: сообщения диалога, вызовы инструментов, ответ
"""

import json
from typing import Optional, List, Dict, Any, Literal

from pydantic import BaseModel, Field

from .results import TokenLogprob


Role = Literal["system", "user", "assistant", "tool"]


class ToolCall(BaseModel):
    """
    Вызов инструмента в формате Ollama: {"function": {"name", "arguments"}}

    OpenAI-совместимые серверы присылают arguments строкой JSON, Ollama
    присылает объект. Наружу всегда отдаётся объект.
    """
    function: Dict[str, Any]

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "ToolCall":
        return cls(function=dict(raw.get("function") or {}))

    @property
    def name(self) -> str:
        return self.function.get("name", "")

    @property
    def arguments(self) -> Dict[str, Any]:
        args = self.function.get("arguments") or {}
        if isinstance(args, str):
            try:
                args = json.loads(args)
            except json.JSONDecodeError:
                return {}
        return args if isinstance(args, dict) else {}

    def to_api_dict(self) -> Dict[str, Any]:
        return {"function": {"name": self.name, "arguments": self.arguments}}


class ChatMessage(BaseModel):
    """
    Сообщение диалога

    Диалог тега растёт от вопроса к вопросу: user с контекстом и
    вопросом, assistant с ответом, между ними assistant с tool_calls и
    tool с результатами инструментов.
    """
    role: Role
    content: str = ""
    tool_calls: Optional[List[ToolCall]] = None

    def to_api_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_api_dict() for call in self.tool_calls]
        return payload

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Optional[List[ToolCall]] = None) -> "ChatMessage":
        return cls(role="assistant", content=content, tool_calls=tool_calls or None)

    @classmethod
    def tool_response(cls, content: str) -> "ChatMessage":
        """Результат инструмента (id вызова Ollama не требует)"""
        return cls(role="tool", content=content)


class ChatResult(BaseModel):
    """
    Ответ /api/chat или описание неудачи

    Длительности в наносекундах, как их отдаёт сервер; elapsed_time
    измерен клиентом в секундах.
    """
    success: bool = True
    content: str = ""
    thinking: str = ""
    tool_calls: Optional[List[ToolCall]] = None

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_duration: Optional[int] = None
    load_duration: Optional[int] = None
    prompt_eval_duration: Optional[int] = None
    eval_duration: Optional[int] = None

    logprobs: List[TokenLogprob] = Field(default_factory=list)

    elapsed_time: float = Field(default=0.0, ge=0.0)
    error: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def prompt_toks_per_sec(self) -> Optional[float]:
        if self.prompt_tokens and self.prompt_eval_duration:
            return self.prompt_tokens / (self.prompt_eval_duration / 1e9)
        return None

    @property
    def eval_toks_per_sec(self) -> Optional[float]:
        if self.completion_tokens and self.eval_duration:
            return self.completion_tokens / (self.eval_duration / 1e9)
        return None

    @classmethod
    def failure(cls, error: str) -> "ChatResult":
        return cls(success=False, error=error)
