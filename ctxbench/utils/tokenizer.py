"""
Tokenizer — оценка количества токенов по числу символов

Быстрая эвристика в стиле токенизаторов llama3/qwen. Используется только
для калибровки и вывода прогресса: решения о корректности на ней не строятся.
"""

import math
from typing import Iterable, Tuple


DEFAULT_CHARS_PER_TOKEN = 4.2
CODE_CHARS_PER_TOKEN = 2.8
STRUCTURED_CHARS_PER_TOKEN = 3.0

# (максимальный контекст, символов на токен); на больших контекстах
# токенизатор эффективнее
CONTEXT_DEPENDENT_RATIOS: Tuple[Tuple[float, float], ...] = (
    (4096, 4.0),
    (16384, 4.35),
    (32768, 4.5),
    (65536, 4.6),
    (131072, 4.7),
    (262144, 4.7),
    (math.inf, 4.7),
)

# Служебные токены роли в чат-шаблоне llama3
CHAT_ROLE_OVERHEAD = 4


def chars_per_token_for_context(context_length: int) -> float:
    """Коэффициент символов на токен для заданного размера контекста"""
    for max_context, ratio in CONTEXT_DEPENDENT_RATIOS:
        if context_length <= max_context:
            return ratio
    return DEFAULT_CHARS_PER_TOKEN


def estimate_tokens(text: str, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    """
    Оценить число токенов в тексте

    Args:
        text: Текст
        chars_per_token: Символов на токен

    Returns:
        ceil(len(text) / chars_per_token), 0 для пустого текста
    """
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def estimate_tokens_for_context(text: str, context_length: int) -> int:
    """Оценка с коэффициентом, зависящим от размера контекста"""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token_for_context(context_length))


def detect_content_ratio(text: str) -> float:
    """Подобрать коэффициент по типу содержимого (код, JSON, обычный текст)"""
    if not text:
        return DEFAULT_CHARS_PER_TOKEN

    symbols = sum(
        1 for c in text
        if not c.isalpha() and not c.isdigit() and not c.isspace()
    )
    if symbols / len(text) > 0.15:
        return CODE_CHARS_PER_TOKEN

    if "{" in text and "}" in text and ":" in text:
        return STRUCTURED_CHARS_PER_TOKEN

    return DEFAULT_CHARS_PER_TOKEN


def estimate_tokens_smart(text: str) -> int:
    """Оценка с автоопределением типа содержимого"""
    if not text:
        return 0
    return math.ceil(len(text) / detect_content_ratio(text))


def estimate_chat_message_tokens(role: str, content: str) -> int:
    """Токены сообщения чата вместе со служебными токенами роли"""
    return estimate_tokens(content) + CHAT_ROLE_OVERHEAD


def estimate_conversation_tokens(messages: Iterable[Tuple[str, str]]) -> int:
    """Токены всего диалога: BOS + сумма по сообщениям"""
    total = 1
    for role, content in messages:
        total += estimate_chat_message_tokens(role, content)
    return total


def tokens_to_chars(tokens: int, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Сколько символов нужно, чтобы заполнить бюджет токенов"""
    return int(tokens * chars_per_token)


def validate_context_fit(content: str, max_tokens: int) -> Tuple[bool, int, float]:
    """
    Проверить, помещается ли текст в бюджет

    Returns:
        (помещается, оценка токенов, процент бюджета)
    """
    estimated = estimate_tokens_smart(content)
    percent = estimated * 100.0 / max_tokens if max_tokens > 0 else 0.0
    return estimated <= max_tokens, estimated, percent


def token_summary(content: str, max_tokens: int) -> str:
    """Строка вида `Tokens: ~1,234/4,096 (30.1%) [OK]`"""
    fits, estimated, percent = validate_context_fit(content, max_tokens)
    status = "OK" if fits else "OVERFLOW"
    return f"Tokens: ~{estimated:,}/{max_tokens:,} ({percent:.1f}%) [{status}]"
