"""
API Clients - HTTP клиенты для внешних сервисов

Клиенты:
- OllamaClient: сервер инференса (чат, загрузка моделей, метаданные)
- CloudJudgeProvider: облачные судьи (Anthropic, OpenAI и совместимые, Azure, Cohere)

Принципы:
- Каждый клиент отвечает только за HTTP взаимодействие
- Клиенты stateless
- Используют Settings через фабричный метод from_settings()
"""

from .ollama import OllamaClient, model_names_match, normalize_model_name
from .cloud import (
    CloudJudgeConfig,
    CloudJudgeProvider,
    create_provider,
    is_cloud_spec,
    parse_judge_spec,
)

__all__ = [
    "OllamaClient",
    "model_names_match",
    "normalize_model_name",
    "CloudJudgeConfig",
    "CloudJudgeProvider",
    "create_provider",
    "is_cloud_spec",
    "parse_judge_spec",
]
