"""
Разбор списка тегов для тестирования

Теги задаются через запятую; `*` и `?` раскрываются по списку локальных
моделей сервера (/api/tags). Тег без двоеточия дополняется именем модели.
"""

import re
import logging
from typing import List, Iterable, Optional

from ..clients.ollama import normalize_model_name


logger = logging.getLogger(__name__)


def split_tags(value: Optional[str]) -> List[str]:
    """'q4_K_M, q8_0' -> ['q4_K_M', 'q8_0']"""
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


def full_tag_name(model_name: str, tag: str) -> str:
    """Имя модели с тегом: тег с двоеточием считается полным"""
    return tag if ":" in tag else f"{model_name}:{tag}"


def wildcard_to_regex(pattern: str) -> re.Pattern:
    escaped = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{escaped}$", re.IGNORECASE)


def has_wildcard(pattern: str) -> bool:
    return "*" in pattern or "?" in pattern


def repository_of(name: str) -> str:
    """Имя модели без тега"""
    return name.split(":", 1)[0].lower()


def expand_tags(model_name: str, patterns: Iterable[str], available: Iterable[str]) -> List[str]:
    """
    Раскрыть шаблоны тегов

    Args:
        model_name: Имя модели (репозиторий)
        patterns: Теги и шаблоны
        available: Имена моделей на сервере

    Returns:
        Полные имена без повторов, в порядке появления
    """
    available = list(available)
    result: List[str] = []
    seen = set()

    for pattern in patterns:
        full = full_tag_name(model_name, pattern)
        if has_wildcard(full):
            regex = wildcard_to_regex(full)
            repository = repository_of(full)
            matches = [n for n in available if repository_of(n) == repository and regex.match(n)]
            if not matches:
                logger.warning(f"Шаблон {pattern} не совпал ни с одной моделью")
            candidates = sorted(matches, key=str.lower)
        else:
            candidates = [full]

        for name in candidates:
            key = normalize_model_name(name)
            if key not in seen:
                seen.add(key)
                result.append(name)

    return result
