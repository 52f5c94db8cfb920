"""
Ollama Client - HTTP клиент для сервера инференса (Ollama-совместимый API)

Ответственность (SRP):
- Запросы /api/chat (обычные и потоковые)
- Загрузка/выгрузка моделей и опрос /api/ps
- Метаданные моделей (/api/show, /api/tags, /api/version)
- Потоковая загрузка (/api/pull) и удаление моделей

НЕ отвечает за:
- Повторы запросов при ошибках (это оркестратор и PullManager)
- Оценку ответов (это JudgmentService)

Клиент синхронный; асинхронный код вызывает его через asyncio.to_thread.

Использование:
    from ctxbench.config import get_settings
    from ctxbench.clients import OllamaClient

    client = OllamaClient.from_settings(get_settings())
    result = client.chat(
        model="qwen3:8b",
        messages=[ChatMessage.user("Привет!")],
        options={"num_ctx": 8192, "seed": 365},
    )
"""

import json
import time
import logging
from typing import Optional, List, Dict, Any, Iterator, Union

import requests

from ..schemas.messages import ChatMessage, ChatResult, ToolCall
from ..schemas.results import TokenLogprob


logger = logging.getLogger(__name__)

THINK_END_TAG = "</think>"


def normalize_model_name(name: str) -> str:
    """Имя модели для сравнения: нижний регистр, без суффикса :latest"""
    name = (name or "").strip().lower()
    if name.endswith(":latest"):
        name = name[: -len(":latest")]
    return name


def model_names_match(running: str, target: str) -> bool:
    """Совпадает ли имя загруженной модели с искомым"""
    running = normalize_model_name(running)
    target = normalize_model_name(target)
    return running == target or running.startswith(target + ":")


class OllamaClient:
    """
    HTTP клиент сервера инференса

    Принципы:
    - Stateless (кроме конфигурации)
    - Не знает о бизнес-логике бенчмарка
    - Ошибки чата возвращаются как ChatResult.failure, а не исключения
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        timeout: int = 1800,
        metadata_timeout: int = 30,
        keep_alive: str = "30m",
        unload_poll_interval: float = 0.5,
        unload_timeout: float = 30.0,
    ):
        """
        Args:
            base_url: URL сервера
            timeout: Таймаут запроса чата в секундах
            metadata_timeout: Таймаут служебных запросов
            keep_alive: Время удержания модели в памяти
            unload_poll_interval: Интервал опроса /api/ps при выгрузке
            unload_timeout: Сколько ждать выгрузки модели
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.metadata_timeout = metadata_timeout
        self.keep_alive = keep_alive
        self.unload_poll_interval = unload_poll_interval
        self.unload_timeout = unload_timeout

        logger.debug(f"OllamaClient инициализирован, base_url={self.base_url}")

    @classmethod
    def from_settings(
        cls,
        settings,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> "OllamaClient":
        """
        Создать клиент из Settings

        Args:
            settings: Объект Settings из ctxbench.config
            base_url: Другой сервер (например, для судьи)
            timeout: Переопределение таймаута чата
        """
        return cls(
            base_url=base_url or settings.server.url,
            timeout=timeout or settings.bench.timeout,
            metadata_timeout=settings.server.metadata_timeout,
            keep_alive=settings.server.keep_alive,
            unload_poll_interval=settings.server.unload_poll_interval,
            unload_timeout=settings.server.unload_timeout,
        )

    # =========================================================================
    # Чат
    # =========================================================================

    def chat(
        self,
        model: str,
        messages: List[ChatMessage],
        options: Optional[Dict[str, Any]] = None,
        think: Optional[Union[bool, str]] = None,
        system: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        response_format: Optional[str] = None,
        logprobs: bool = True,
        timeout: Optional[int] = None,
    ) -> ChatResult:
        """
        Отправить непотоковый запрос /api/chat

        Args:
            model: Имя модели с тегом
            messages: История диалога
            options: Параметры генерации (num_ctx, seed, ...)
            think: Режим рассуждений (флаг или уровень)
            system: Системный промпт
            tools: Определения инструментов
            response_format: "json" для ответа в JSON
            logprobs: Запросить log-вероятности токенов
            timeout: Таймаут запроса

        Returns:
            ChatResult с ответом или ошибкой
        """
        request_body: Dict[str, Any] = {
            "model": model,
            "messages": [m.to_api_dict() for m in messages],
            "stream": False,
            "options": options or {},
        }
        if think is not None:
            request_body["think"] = think
        if system:
            request_body["system"] = system
        if tools:
            request_body["tools"] = tools
        if response_format:
            request_body["format"] = response_format
        if logprobs:
            request_body["logprobs"] = True

        timeout = timeout or self.timeout
        logger.debug(f"Запрос к {model}, сообщений={len(messages)}, options={request_body['options']}")

        start_time = time.time()

        try:
            response = requests.post(
                f"{self.base_url}/api/chat",
                json=request_body,
                timeout=timeout,
            )
            elapsed = time.time() - start_time

            if response.status_code == 200:
                return self._parse_success_response(response.json(), elapsed)
            return self._parse_error_response(response, elapsed)

        except requests.exceptions.Timeout:
            logger.warning(f"Таймаут после {timeout}s для {model}")
            return self._failure(f"Timeout after {timeout}s", start_time)

        except requests.exceptions.ConnectionError as e:
            logger.error(f"Ошибка соединения: {e}")
            return self._failure(f"Connection error: {e}", start_time)

        except Exception as e:
            logger.exception(f"Неожиданная ошибка: {e}")
            return self._failure(str(e), start_time)

    def chat_stream(
        self,
        model: str,
        messages: List[ChatMessage],
        options: Optional[Dict[str, Any]] = None,
        think: Optional[Union[bool, str]] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        timeout: int = 60,
    ) -> ChatResult:
        """
        Потоковый /api/chat, собранный в один ChatResult

        Используется для коротких проверок (thinking, инструменты).
        Поля thinking и thinking_content объединяются.
        """
        request_body: Dict[str, Any] = {
            "model": model,
            "messages": [m.to_api_dict() for m in messages],
            "stream": True,
            "options": options or {},
        }
        if think is not None:
            request_body["think"] = think
        if tools:
            request_body["tools"] = tools

        start_time = time.time()
        content_parts: List[str] = []
        thinking_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        last: Dict[str, Any] = {}

        try:
            with requests.post(
                f"{self.base_url}/api/chat",
                json=request_body,
                stream=True,
                timeout=timeout,
            ) as response:
                if response.status_code != 200:
                    return self._parse_error_response(response, time.time() - start_time)

                for chunk in self._iter_json_lines(response):
                    if chunk.get("error"):
                        return self._failure(str(chunk["error"]), start_time)
                    message = chunk.get("message") or {}
                    content_parts.append(message.get("content") or "")
                    thinking_parts.append(message.get("thinking") or "")
                    thinking_parts.append(message.get("thinking_content") or "")
                    for raw in message.get("tool_calls") or []:
                        tool_calls.append(ToolCall.from_api(raw))
                    last = chunk

        except requests.exceptions.Timeout:
            logger.warning(f"Таймаут потокового запроса после {timeout}s для {model}")
            return self._failure(f"Timeout after {timeout}s", start_time)

        except requests.exceptions.RequestException as e:
            logger.error(f"Ошибка потокового запроса: {e}")
            return self._failure(str(e), start_time)

        return ChatResult(
            success=True,
            content="".join(content_parts),
            thinking="".join(thinking_parts),
            tool_calls=tool_calls or None,
            prompt_tokens=last.get("prompt_eval_count"),
            completion_tokens=last.get("eval_count"),
            total_duration=last.get("total_duration"),
            elapsed_time=time.time() - start_time,
        )

    # =========================================================================
    # Загрузка и выгрузка моделей
    # =========================================================================

    def load_model(self, model: str, keep_alive: Optional[str] = None) -> bool:
        """Загрузить модель пустым запросом /api/generate"""
        body = {"model": model, "prompt": "", "keep_alive": keep_alive or self.keep_alive}
        try:
            response = requests.post(f"{self.base_url}/api/generate", json=body, timeout=self.timeout)
            if response.status_code == 200:
                logger.info(f"Модель загружена: {model}")
                return True
            logger.warning(f"Не удалось загрузить {model}: HTTP {response.status_code}")
        except requests.exceptions.RequestException as e:
            logger.warning(f"Не удалось загрузить {model}: {e}")
        return False

    def unload_model(self, model: str, wait: bool = True) -> bool:
        """
        Выгрузить модель (keep_alive "0") и дождаться её исчезновения из /api/ps

        Returns:
            True, если модель выгружена за отведённое время
        """
        body = {"model": model, "prompt": "", "keep_alive": "0"}
        try:
            requests.post(f"{self.base_url}/api/generate", json=body, timeout=self.metadata_timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Ошибка запроса выгрузки {model}: {e}")
            return False

        if not wait:
            return True

        deadline = time.monotonic() + self.unload_timeout
        while time.monotonic() < deadline:
            if not self.is_running(model):
                # Сервер освобождает память чуть позже
                time.sleep(1.0)
                logger.info(f"Модель выгружена: {model}")
                return True
            time.sleep(self.unload_poll_interval)

        logger.warning(f"Модель {model} не выгрузилась за {self.unload_timeout:.0f}s")
        return False

    def unload_all(self, keep: Optional[str] = None) -> int:
        """
        Выгрузить все загруженные модели

        Args:
            keep: Модель, которую не трогать

        Returns:
            Количество выгруженных моделей
        """
        unloaded = 0
        for entry in self.list_running():
            name = entry.get("name") or entry.get("model") or ""
            if not name or (keep and model_names_match(name, keep)):
                continue
            if self.unload_model(name):
                unloaded += 1
        return unloaded

    def list_running(self) -> List[Dict[str, Any]]:
        """Загруженные модели (/api/ps)"""
        data = self._get_json("/api/ps")
        return (data or {}).get("models") or []

    def is_running(self, model: str) -> bool:
        return any(
            model_names_match(entry.get("name") or entry.get("model") or "", model)
            for entry in self.list_running()
        )

    # =========================================================================
    # Метаданные
    # =========================================================================

    def list_models(self) -> List[Dict[str, Any]]:
        """Локальные модели (/api/tags)"""
        data = self._get_json("/api/tags")
        return (data or {}).get("models") or []

    def find_local_model(self, model: str) -> Optional[Dict[str, Any]]:
        """Запись /api/tags для модели или None"""
        target = normalize_model_name(model)
        for entry in self.list_models():
            if normalize_model_name(entry.get("name") or entry.get("model") or "") == target:
                return entry
        return None

    def show_model(self, model: str) -> Optional[Dict[str, Any]]:
        """Подробности модели (/api/show)"""
        try:
            response = requests.post(
                f"{self.base_url}/api/show",
                json={"model": model},
                timeout=self.metadata_timeout,
            )
            if response.status_code == 200:
                return response.json()
            logger.warning(f"/api/show для {model}: HTTP {response.status_code}")
        except requests.exceptions.RequestException as e:
            logger.error(f"Ошибка /api/show для {model}: {e}")
        return None

    def version(self) -> Optional[str]:
        """Версия сервера (/api/version)"""
        data = self._get_json("/api/version")
        return (data or {}).get("version")

    # =========================================================================
    # Загрузка и удаление
    # =========================================================================

    def pull_stream(self, model: str) -> Iterator[Dict[str, Any]]:
        """
        Потоковая загрузка модели (/api/pull)

        Yields:
            Сообщения прогресса сервера ({status, digest, total, completed}
            или {error})

        Raises:
            requests.exceptions.RequestException: Ошибки транспорта
        """
        with requests.post(
            f"{self.base_url}/api/pull",
            json={"model": model, "stream": True},
            stream=True,
            timeout=(self.metadata_timeout, None),
        ) as response:
            if response.status_code != 200:
                yield {"error": f"HTTP {response.status_code}: {response.text[:200]}"}
                return
            yield from self._iter_json_lines(response)

    def delete_model(self, model: str) -> bool:
        """Удалить модель с сервера"""
        try:
            response = requests.delete(
                f"{self.base_url}/api/delete",
                json={"model": model},
                timeout=self.metadata_timeout,
            )
            if response.status_code == 200:
                logger.info(f"Модель удалена: {model}")
                return True
            logger.warning(f"Не удалось удалить {model}: HTTP {response.status_code}")
        except requests.exceptions.RequestException as e:
            logger.error(f"Ошибка удаления {model}: {e}")
        return False

    # =========================================================================
    # Приватные методы
    # =========================================================================

    def _get_json(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            response = requests.get(f"{self.base_url}{path}", timeout=self.metadata_timeout)
            if response.status_code == 200:
                return response.json()
            logger.warning(f"GET {path}: HTTP {response.status_code}")
        except requests.exceptions.RequestException as e:
            logger.error(f"Ошибка GET {path}: {e}")
        return None

    @staticmethod
    def _iter_json_lines(response: requests.Response) -> Iterator[Dict[str, Any]]:
        for line in response.iter_lines():
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Пропущена строка потока: {line[:100]!r}")

    @staticmethod
    def _failure(error: str, start_time: float) -> ChatResult:
        result = ChatResult.failure(error)
        result.elapsed_time = time.time() - start_time
        return result

    def _parse_success_response(self, data: Dict[str, Any], elapsed: float) -> ChatResult:
        """Парсить успешный ответ от API"""
        message = data.get("message") or {}
        content = message.get("content") or ""
        thinking = message.get("thinking") or ""

        # Рассуждения внутри content, если сервер не выделил их в поле
        if not thinking and THINK_END_TAG in content:
            index = content.index(THINK_END_TAG)
            if index > 0:
                thinking = content[:index].strip()
                content = content[index + len(THINK_END_TAG):].strip()

        tool_calls = None
        raw_tool_calls = message.get("tool_calls")
        if raw_tool_calls:
            tool_calls = [ToolCall.from_api(tc) for tc in raw_tool_calls]

        tokens = [
            TokenLogprob(token=lp.get("token", ""), logprob=lp.get("logprob", 0.0), bytes=lp.get("bytes"))
            for lp in data.get("logprobs") or []
        ]

        logger.debug(
            f"Ответ: {len(content)} символов, prompt={data.get('prompt_eval_count')}, "
            f"eval={data.get('eval_count')}, время={elapsed:.2f}s"
        )

        return ChatResult(
            success=True,
            content=content,
            thinking=thinking,
            tool_calls=tool_calls,
            prompt_tokens=data.get("prompt_eval_count"),
            completion_tokens=data.get("eval_count"),
            total_duration=data.get("total_duration"),
            load_duration=data.get("load_duration"),
            prompt_eval_duration=data.get("prompt_eval_duration"),
            eval_duration=data.get("eval_duration"),
            logprobs=tokens,
            elapsed_time=elapsed,
        )

    def _parse_error_response(self, response: requests.Response, elapsed: float) -> ChatResult:
        """Парсить ошибочный ответ от API"""
        error_msg = f"HTTP {response.status_code}"

        try:
            error_data = response.json()
            if "error" in error_data:
                error_msg = f"{error_msg}: {error_data['error']}"
        except ValueError:
            error_msg = f"{error_msg}: {response.text[:200]}"

        logger.warning(f"Ошибка API: {error_msg}")

        result = ChatResult.failure(error_msg)
        result.elapsed_time = elapsed
        return result
