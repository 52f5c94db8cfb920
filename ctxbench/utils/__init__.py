"""
Utils — утилиты для бенчмарка

Модули:
- hashing: Дайджесты тестовых наборов
- file_ops: Работа с файлами (YAML, JSON, атомарная запись, zip-бэкап)
- tokenizer: Оценка числа токенов по символам
- cli: Форматирование CLI вывода
"""

from .hashing import (
    compute_hash,
    compute_file_digest,
    normalize_digest,
    short_digest,
    digests_match,
)
from .file_ops import (
    load_yaml,
    load_json,
    save_json,
    ensure_dir,
    atomic_write_text,
    backup_to_zip,
    restore_from_zip,
)

__all__ = [
    # Hashing
    "compute_hash",
    "compute_file_digest",
    "normalize_digest",
    "short_digest",
    "digests_match",
    # File operations
    "load_yaml",
    "load_json",
    "save_json",
    "ensure_dir",
    "atomic_write_text",
    "backup_to_zip",
    "restore_from_zip",
]
