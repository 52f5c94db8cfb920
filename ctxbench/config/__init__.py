"""
Config module — настройки и логирование ctxbench

Экспортирует:
- Settings: класс настроек
- get_settings(): получить singleton настроек
- reload_settings(): перезагрузить настройки
- setup_logging(): настроить логирование согласно конфигу
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .settings import Settings, get_settings, reload_settings


# Библиотеки, которые шумят на DEBUG
QUIET_LOGGERS = ("urllib3", "requests", "matplotlib", "PIL", "asyncio")


def _level(name: str) -> int:
    return getattr(logging, name, logging.INFO)


def _file_handler(path: Path, settings: Settings) -> logging.Handler:
    """Файл логов: с ротацией для общего лога, без неё для лога прогона"""
    file_config = settings.logging.file
    path.parent.mkdir(parents=True, exist_ok=True)

    if file_config.rotation.enabled and path == settings.get_log_file_path():
        handler = RotatingFileHandler(
            filename=str(path),
            maxBytes=file_config.rotation.max_size_mb * 1024 * 1024,
            backupCount=file_config.rotation.backup_count,
            encoding="utf-8",
        )
    else:
        handler = logging.FileHandler(filename=str(path), encoding="utf-8")

    handler.setLevel(_level(file_config.level))
    handler.setFormatter(logging.Formatter(
        fmt=settings.logging.format,
        datefmt=settings.logging.date_format,
    ))
    return handler


def setup_logging(
    settings: Optional[Settings] = None,
    log_file: Optional[str] = None,
    verbose: bool = False,
) -> None:
    """
    Настроить логирование согласно settings.yaml

    Консоль пишет в stderr через rich, чтобы не смешиваться с
    построчным прогрессом прогона в stdout. Повторный вызов заменяет
    обработчики (main вызывает функцию второй раз после разбора
    аргументов).

    Args:
        settings: Объект настроек (если None — загружается автоматически)
        log_file: Отдельный файл логов для прогона (вместо общего)
        verbose: Выводить DEBUG в консоль
    """
    if settings is None:
        settings = get_settings()
    log_config = settings.logging

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if verbose else _level(log_config.level))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if log_config.console.enabled:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            markup=False,
            log_time_format=log_config.date_format,
        )
        console_handler.setLevel(logging.DEBUG if verbose else _level(log_config.console.level))
        root_logger.addHandler(console_handler)

    if log_file:
        root_logger.addHandler(_file_handler(Path(log_file), settings))
    elif log_config.file.enabled:
        root_logger.addHandler(_file_handler(settings.get_log_file_path(), settings))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        f"Логирование: level={logging.getLevelName(root_logger.level)}, "
        f"file={log_file or (settings.get_log_file_path() if log_config.file.enabled else 'нет')}"
    )


__all__ = ["Settings", "get_settings", "reload_settings", "setup_logging"]
