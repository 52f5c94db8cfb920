"""
Preflight - проверки модели перед тестированием

Отвечает за:
- Метаданные модели (/api/show + /api/tags): семейство, размер, квантизация,
  шаблон чата, максимальный контекст, дайджест
- Обнаружение режима рассуждений (thinking)
- Выбор запаса контекста и подбор предела под возможности модели
- Проверку поддержки инструментов: по шаблону и тремя пробными вызовами

Результаты кэшируются в PreflightCheckResult по дайджесту модели.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from ..clients.ollama import OllamaClient
from ..errors import ContextResolutionError
from ..schemas.messages import ChatMessage
from ..schemas.results import PreflightCheckResult
from ..schemas.suite import Category, TestSuite
from ..utils.hashing import normalize_digest
from .tools import get_tool_definitions


logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT = 131072
CONTEXT_MARGIN = 1.02

THINKING_TRIGGER_PROMPT = "What is 15 + 27? Think step by step."
THINKING_PROBE_OPTIONS = {"num_ctx": 4096, "num_predict": 512}
TOOLS_PROBE_OPTIONS = {"num_ctx": 2048, "num_predict": 2048}
PROBE_TIMEOUT = 60

TOOLS_PREFLIGHT_CASES: List[Tuple[str, str]] = [
    ("Using the magic calculator, what is 5 + 3?", "magic_calculator"),
    ("What is the average lifespan of a tiger?", "get_animal_lifespan"),
    ("How many ingredients does apple pie need?", "get_recipe_ingredients"),
]


# =============================================================================
# Метаданные модели
# =============================================================================

@dataclass
class ModelInfo:
    """Метаданные тега модели"""
    name: str
    family: str = ""
    parameter_size: str = ""
    quantization_level: str = ""
    template: Optional[str] = None
    max_context: int = DEFAULT_MAX_CONTEXT
    size: int = 0
    digest: Optional[str] = None

    @property
    def short_digest(self) -> Optional[str]:
        return self.digest[:12] if self.digest else None


def max_context_from_show(show: Dict[str, Any], default: int = DEFAULT_MAX_CONTEXT) -> int:
    """
    Максимальный контекст из ответа /api/show

    Сначала `<архитектура>.context_length`, затем любой ключ
    `*.context_length`, иначе значение по умолчанию.
    """
    model_info = show.get("model_info") or {}
    architecture = model_info.get("general.architecture")
    if architecture:
        value = model_info.get(f"{architecture}.context_length")
        if isinstance(value, int) and value > 0:
            return value

    for key, value in model_info.items():
        if key.endswith(".context_length") and isinstance(value, int) and value > 0:
            return value

    logger.warning(f"Максимальный контекст модели не найден, используется {default}")
    return default


def fetch_model_info(client: OllamaClient, model: str, default_max_context: int = DEFAULT_MAX_CONTEXT) -> Optional[ModelInfo]:
    """Собрать метаданные модели; None, если /api/show недоступен"""
    show = client.show_model(model)
    if show is None:
        return None

    details = show.get("details") or {}
    info = ModelInfo(
        name=model,
        family=details.get("family") or "",
        parameter_size=details.get("parameter_size") or "",
        quantization_level=details.get("quantization_level") or "",
        template=show.get("template"),
        max_context=max_context_from_show(show, default_max_context),
    )

    entry = client.find_local_model(model)
    if entry is not None:
        info.size = entry.get("size") or 0
        if entry.get("digest"):
            info.digest = normalize_digest(entry["digest"])

    return info


# =============================================================================
# Рассуждения
# =============================================================================

def detect_thinking(client: OllamaClient, model: str) -> bool:
    """
    Поддерживает ли модель рассуждения

    Отправляет задачу, провоцирующую рассуждения, и ищет отдельное поле
    thinking или теги <think> в ответе. Ошибка запроса — False.
    """
    result = client.chat_stream(
        model,
        [ChatMessage.user(THINKING_TRIGGER_PROMPT)],
        options=dict(THINKING_PROBE_OPTIONS),
        timeout=PROBE_TIMEOUT,
    )
    if not result.success:
        logger.warning(f"Проверка thinking для {model} не удалась: {result.error}")
        return False

    content = result.content.lower()
    detected = bool(result.thinking) or "<think>" in content or "</think>" in content
    logger.info(f"Thinking для {model}: {'да' if detected else 'нет'}")
    return detected


# =============================================================================
# Предел контекста
# =============================================================================

def category_fits_within_context(category_length: int, model_max: int) -> bool:
    """
    Помещается ли категория в контекст модели

    Допускается запас 2% и "k" по 1000 вместо 1024
    (256k = 262144 или 256000).
    """
    if category_length <= model_max * CONTEXT_MARGIN:
        return True
    if category_length > 1024 and (category_length // 1024) * 1000 <= model_max * CONTEXT_MARGIN:
        return True
    return False


@dataclass
class ContextResolution:
    """Выбранный предел контекста и категории для теста"""
    effective_max_context: int
    overhead: int
    categories: List[Category] = field(default_factory=list)
    category_limit: Optional[str] = None
    reason: str = ""
    downgraded: bool = False

    @property
    def category_names(self) -> List[str]:
        return [c.name for c in self.categories]


def _highest_fitting(suite: TestSuite, model_max: int) -> Category:
    fitting = [c for c in suite.categories if category_fits_within_context(c.context_length, model_max)]
    if not fitting:
        raise ContextResolutionError(
            f"No categories fit within model's max context length ({model_max:,})"
        )
    return max(fitting, key=lambda c: c.context_length)


def resolve_context(
    suite: TestSuite,
    model_max: int,
    thinking: bool,
    limit: Optional[str] = None,
) -> ContextResolution:
    """
    Подобрать предел контекста

    Args:
        suite: Тестовый набор
        model_max: Максимальный контекст модели
        thinking: Включены ли рассуждения (больший запас)
        limit: Имя категории-предела (-L)

    Raises:
        ContextResolutionError: Нет такой категории или ничего не помещается
    """
    overhead = suite.overhead_for(thinking)
    downgraded = False

    if limit:
        limit_category = suite.get_category(limit)
        if limit_category is None:
            available = ", ".join(c.name for c in suite.categories)
            raise ContextResolutionError(f"Category '{limit}' not found in test suite. Available categories: {available}")
        requested = limit_category.context_length
        reason = f"-L {limit_category.name}"
    else:
        limit_category = None
        requested = suite.max_context_length
        reason = "test suite max"

    if not category_fits_within_context(requested, model_max):
        fitting = _highest_fitting(suite, model_max)
        logger.warning(
            f"Предел {requested:,} больше контекста модели {model_max:,}, "
            f"используется категория {fitting.name}"
        )
        limit_category = fitting
        requested = fitting.context_length
        reason = f"auto-limited to {fitting.name} (model max)"
        downgraded = True
    elif requested + overhead <= model_max:
        requested += overhead
        reason = f"{reason} + {overhead} overhead"

    categories = list(suite.categories)
    if limit_category is not None:
        index = next(i for i, c in enumerate(suite.categories) if c.name == limit_category.name)
        categories = categories[:index + 1]

    resolution = ContextResolution(
        effective_max_context=requested,
        overhead=overhead,
        categories=categories,
        category_limit=limit_category.name if limit_category is not None else None,
        reason=reason,
        downgraded=downgraded,
    )
    logger.info(
        f"Контекст для теста: {requested:,} ({reason}), категории: {', '.join(resolution.category_names)}"
    )
    return resolution


def cached_preflight(previous: Optional[PreflightCheckResult], digest: Optional[str]) -> Optional[PreflightCheckResult]:
    """Кэш pre-flight, если дайджест модели не изменился"""
    if previous is None or not previous.model_digest or not digest:
        return None
    if normalize_digest(previous.model_digest) != normalize_digest(digest):
        return None
    return previous


def new_preflight_result(
    digest: Optional[str],
    thinking: bool,
    overhead: int,
    model_max: int,
    effective_max: int,
) -> PreflightCheckResult:
    return PreflightCheckResult(
        model_digest=digest,
        thinking_enabled=thinking,
        effective_overhead=overhead,
        model_max_context_length=model_max,
        effective_max_context=effective_max,
        checked_at=datetime.now(),
    )


# =============================================================================
# Инструменты
# =============================================================================

def run_tools_preflight(client: OllamaClient, model: str) -> bool:
    """
    Три пробных вызова инструментов

    Для каждого случая первый вызов модели должен быть ожидаемым
    инструментом (без учёта регистра). Нужно пройти все три.
    """
    tools = get_tool_definitions([name for _, name in TOOLS_PREFLIGHT_CASES])
    passed = 0

    for question, expected_tool in TOOLS_PREFLIGHT_CASES:
        result = client.chat_stream(
            model,
            [ChatMessage.user(question)],
            options=dict(TOOLS_PROBE_OPTIONS),
            tools=tools,
            timeout=PROBE_TIMEOUT,
        )
        if not result.success:
            logger.warning(f"Pre-flight инструментов: {expected_tool} — ошибка {result.error}")
            continue
        if not result.tool_calls:
            logger.warning(f"Pre-flight инструментов: {expected_tool} — модель ответила текстом")
            continue

        found = result.tool_calls[0].name
        if found.lower() == expected_tool.lower():
            passed += 1
            logger.info(f"Pre-flight инструментов: {expected_tool} OK")
        else:
            logger.warning(f"Pre-flight инструментов: ожидался {expected_tool}, вызван {found}")

    total = len(TOOLS_PREFLIGHT_CASES)
    logger.info(f"Pre-flight инструментов: {passed}/{total}")
    return passed == total
