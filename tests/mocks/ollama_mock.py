"""
Фейковый сервер инференса для тестов

Повторяет интерфейс OllamaClient без сети: ответы чата берутся из
очереди сценария, остальное хранится в памяти.
"""

import threading
from typing import Any, Callable, Dict, List, Optional, Union

from ctxbench.schemas.messages import ChatMessage, ChatResult, ToolCall
from ctxbench.schemas.results import TokenLogprob


TOOLS_TEMPLATE = "{{- if .Tools }}<tools>{{ .Tools }}</tools>{{ end }}{{ .Prompt }}"

Scripted = Union[ChatResult, Callable[[str, List[ChatMessage]], ChatResult]]


def answer(content: str, prompt_tokens: int = 100, completion_tokens: int = 5) -> ChatResult:
    """Успешный ответ с метриками и log-вероятностями"""
    return ChatResult(
        content=content,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_duration=2_000_000_000,
        load_duration=1_000_000,
        prompt_eval_duration=500_000_000,
        eval_duration=250_000_000,
        logprobs=[TokenLogprob(token=w, logprob=-0.1) for w in content.split()],
    )


def tool_call(name: str, **arguments: Any) -> ChatResult:
    """Ответ с вызовом инструмента"""
    return ChatResult(
        content="",
        tool_calls=[ToolCall(function={"name": name, "arguments": arguments})],
        prompt_tokens=50,
        completion_tokens=10,
    )


class FakeOllamaClient:
    """
    Сервер в памяти

    Атрибуты:
        script: Очередь ответов чата (ChatResult или функция)
        chat_calls: Все запросы чата (model, messages, options, think, tools)
        judge_answer: Вердикт для запросов с response_format="json"
    """

    def __init__(
        self,
        models: Optional[List[str]] = None,
        script: Optional[List[Scripted]] = None,
        max_context: int = 32768,
        template: Optional[str] = TOOLS_TEMPLATE,
        base_url: str = "http://fake:11434",
    ):
        self.base_url = base_url
        self.models: Dict[str, Dict[str, Any]] = {}
        for name in models or []:
            self.add_model(name)
        self.script: List[Scripted] = list(script or [])
        self.max_context = max_context
        self.template = template
        self.default_content = "I do not know."
        self.judge_answer = "YES"
        self.thinking = False
        self.load_ok = True

        self.chat_calls: List[Dict[str, Any]] = []
        self.judge_calls: List[Dict[str, Any]] = []
        self.running: List[str] = []
        self.loaded: List[str] = []
        self.unloaded: List[str] = []
        self.deleted: List[str] = []
        self.pulled: List[str] = []
        self._lock = threading.Lock()

    def add_model(self, name: str) -> None:
        self.models[name] = {
            "name": name,
            "size": 4 * 1024 ** 3,
            "digest": "sha256:" + "ab" * 32,
        }

    # Чат

    def chat(
        self,
        model: str,
        messages: List[ChatMessage],
        options: Optional[Dict[str, Any]] = None,
        think=None,
        system: Optional[str] = None,
        tools=None,
        response_format: Optional[str] = None,
        logprobs: bool = True,
        timeout: Optional[int] = None,
    ) -> ChatResult:
        call = {
            "model": model,
            "messages": list(messages),
            "options": dict(options or {}),
            "think": think,
            "tools": tools,
        }
        if response_format == "json":
            with self._lock:
                self.judge_calls.append(call)
            return answer(f'{{"Answer": "{self.judge_answer}", "Reason": "fake"}}')

        with self._lock:
            self.chat_calls.append(call)
            step = self.script.pop(0) if self.script else None

        if step is None:
            return answer(self.default_content, prompt_tokens=100 + 10 * len(messages))
        if callable(step):
            return step(model, messages)
        return step

    def chat_stream(self, model, messages, options=None, think=None, tools=None, timeout=60) -> ChatResult:
        """Проверки pre-flight: thinking и вызов нужного инструмента"""
        if tools:
            question = messages[-1].content.lower()
            if "calculator" in question:
                return tool_call("magic_calculator", a=5, b=3, operation="add")
            if "lifespan" in question:
                return tool_call("get_animal_lifespan", animal="tiger")
            return tool_call("get_recipe_ingredients", recipe="apple pie")
        result = answer("42")
        if self.thinking:
            result.thinking = "15 + 27 = 42"
        return result

    # Модели

    def list_models(self) -> List[Dict[str, Any]]:
        return list(self.models.values())

    def find_local_model(self, model: str) -> Optional[Dict[str, Any]]:
        return self.models.get(model)

    def show_model(self, model: str) -> Optional[Dict[str, Any]]:
        if model not in self.models:
            return None
        return {
            "details": {"family": "llama", "parameter_size": "8B", "quantization_level": "Q4_K_M"},
            "template": self.template,
            "model_info": {
                "general.architecture": "llama",
                "llama.context_length": self.max_context,
            },
        }

    def version(self) -> Optional[str]:
        return "0.12.3"

    def list_running(self) -> List[Dict[str, Any]]:
        return [{"name": name} for name in self.running]

    def load_model(self, model: str, keep_alive: Optional[str] = None) -> bool:
        self.loaded.append(model)
        if self.load_ok and model not in self.running:
            self.running.append(model)
        return self.load_ok

    def unload_model(self, model: str, wait: bool = True) -> bool:
        self.unloaded.append(model)
        if model in self.running:
            self.running.remove(model)
        return True

    def unload_all(self, keep: Optional[str] = None) -> int:
        count = len(self.running)
        self.unloaded.extend(self.running)
        self.running = []
        return count

    def pull_stream(self, model: str):
        self.pulled.append(model)
        self.add_model(model)
        yield {"status": "pulling manifest"}
        yield {"status": "success"}

    def delete_model(self, model: str) -> bool:
        self.deleted.append(model)
        self.models.pop(model, None)
        return True


class FakeCloudProvider:
    """Облачный провайдер судьи без сети"""

    provider_name = "anthropic"

    def __init__(self, model_name: str = "claude-test", replies: Optional[List[str]] = None):
        self.model_name = model_name
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    def judge(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        self.calls.append({"system": system_prompt, "user": user_prompt, "max_tokens": max_tokens})
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        return '{"Answer": "YES", "Reason": "ok"}'

    def api_version(self) -> Optional[str]:
        return "2023-06-01"
