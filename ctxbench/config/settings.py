"""
Настройки ctxbench

Источники по убыванию приоритета:
1. Аргументы Settings(...) (CLI и тесты)
2. Переменные окружения и .env (SERVER__URL, JUDGE__MODE, ...)
3. OLLAMA_HOST для адреса сервера
4. configs/settings.yaml (или файл из CTXBENCH_CONFIG)
5. Значения по умолчанию

Вложенные секции сливаются по ключам: Settings(bench={"seed": 1})
меняет только seed, остальное берётся из YAML.

Использование:
    from ctxbench.config import get_settings

    settings = get_settings()
    print(settings.server.url)
    print(settings.paths.results_dir)
"""

import os
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Literal, Tuple, Type

from pydantic import BaseModel, Field
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from ..utils.file_ops import load_yaml


logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CTXBENCH_CONFIG"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


# =============================================================================
# Секции settings.yaml
# =============================================================================

class PathsConfig(BaseModel):
    """Директории наборов, результатов, отчётов и логов"""
    suites_dir: str = "suites"
    results_dir: str = "results"
    reports_dir: str = "reports"
    logs_dir: str = "logs"


class ServerConfig(BaseModel):
    """Сервер инференса (Ollama-совместимый API)"""
    url: str = "http://localhost:11434"
    # Таймаут служебных запросов (show, tags, ps), секунд
    metadata_timeout: int = 30
    keep_alive: str = "30m"
    unload_poll_interval: float = 0.5
    unload_timeout: float = 30.0


class BenchConfig(BaseModel):
    """Параметры прогона тестов"""
    seed: int = 365
    timeout: int = 1800
    max_retry_attempts: int = 5
    retry_delay_ms: int = 1000
    max_tool_iterations: int = 5
    context_header: str = "THE BOOK: CHRONICLES OF THE ANIMAL TRIBE"
    placeholder_ack: str = "I have read and memorized the content."
    default_max_context: int = 131072


class JudgeConfig(BaseModel):
    """Настройки судьи"""
    url: Optional[str] = None  # None: тот же сервер, что и для тестов
    mode: Literal["serial", "parallel"] = "serial"
    ctx_size: int = 0
    num_predict: int = 8192
    max_retry_attempts: int = 25
    retry_delay_ms: int = 5000
    max_retry_delay_ms: int = 30000
    cloud_max_tokens: int = 1024
    cloud_timeout: int = 120


class PullConfig(BaseModel):
    """Политика повторов при загрузке моделей"""
    quick_attempts: int = 50
    quick_delay: float = 2.0
    slow_attempts: int = 50
    slow_delay: float = 30.0
    max_rate_limit_delay: float = 300.0


class LogRotation(BaseModel):
    enabled: bool = True
    max_size_mb: int = 10
    backup_count: int = 5


class ConsoleLog(BaseModel):
    enabled: bool = True
    level: LogLevel = "WARNING"


class FileLog(BaseModel):
    enabled: bool = True
    path: str = "ctxbench.log"
    level: LogLevel = "DEBUG"
    rotation: LogRotation = Field(default_factory=LogRotation)


class LoggingConfig(BaseModel):
    """Логи: консоль (rich, stderr) и файл в logs_dir"""
    level: LogLevel = "INFO"
    format: str = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    console: ConsoleLog = Field(default_factory=ConsoleLog)
    file: FileLog = Field(default_factory=FileLog)


# =============================================================================
# Дополнительные источники
# =============================================================================

def find_config_file() -> Optional[Path]:
    """
    Файл настроек: CTXBENCH_CONFIG, затем configs/settings.yaml в
    текущей директории, затем рядом с пакетом
    """
    explicit = os.getenv(CONFIG_ENV_VAR)
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise FileNotFoundError(f"{CONFIG_ENV_VAR} points to a missing file: {path}")
        return path

    for path in (
        Path("configs/settings.yaml"),
        Path(__file__).resolve().parent.parent.parent / "configs" / "settings.yaml",
    ):
        if path.exists():
            return path
    return None


class _DictSource(PydanticBaseSettingsSource):
    """Источник, отдающий готовый словарь целиком"""

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return None, field_name, False

    def load(self) -> Dict[str, Any]:
        raise NotImplementedError

    def __call__(self) -> Dict[str, Any]:
        return self.load()


class YamlFileSource(_DictSource):
    """configs/settings.yaml"""

    def load(self) -> Dict[str, Any]:
        path = find_config_file()
        if path is None:
            return {}
        data = load_yaml(path)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file must contain a mapping: {path}")
        return data


class OllamaHostSource(_DictSource):
    """OLLAMA_HOST: привычная переменная для адреса сервера"""

    def load(self) -> Dict[str, Any]:
        host = os.getenv("OLLAMA_HOST")
        if not host:
            return {}
        if not host.startswith(("http://", "https://")):
            host = f"http://{host}"
        return {"server": {"url": host}}


# =============================================================================
# Главный класс настроек
# =============================================================================

class Settings(BaseSettings):
    """
    Настройки проекта

    Example:
        settings = Settings(bench={"max_retry_attempts": 2})
        settings.bench.retry_delay_ms  # из settings.yaml
    """

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    paths: PathsConfig = Field(default_factory=PathsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    bench: BenchConfig = Field(default_factory=BenchConfig)
    judge: JudgeConfig = Field(default_factory=JudgeConfig)
    pull: PullConfig = Field(default_factory=PullConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            OllamaHostSource(settings_cls),
            YamlFileSource(settings_cls),
        )

    def get_log_file_path(self) -> Path:
        return Path(self.paths.logs_dir) / self.logging.file.path

    def get_judge_url(self) -> str:
        """URL сервера судьи (по умолчанию тот же, что для тестов)"""
        return (self.judge.url or self.server.url).rstrip("/")


# =============================================================================
# Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """Настройки процесса (читаются один раз)"""
    settings = Settings()
    logger.debug(f"Настройки загружены, сервер: {settings.server.url}")
    return settings


def reload_settings() -> Settings:
    """Сбросить кеш и перечитать настройки (после смены окружения или YAML)"""
    get_settings.cache_clear()
    return get_settings()
