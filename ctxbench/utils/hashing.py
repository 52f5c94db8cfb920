"""
Hashing Utilities — дайджесты тестовых наборов

Результаты бенчмарка привязаны к конкретной версии тестового набора:
в файл результатов записывается SHA-256 исходного JSON набора, и при
повторном запуске он сверяется с текущим.

Использование:
    from ctxbench.utils.hashing import compute_file_digest

    digest = compute_file_digest("suites/ctxbench.json")
    print(short_digest(digest))
"""

import hashlib
from pathlib import Path
from typing import Union


def compute_hash(data: bytes, algorithm: str = "sha256") -> str:
    """Хеш байтовой строки (hex)"""
    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return hasher.hexdigest()


def compute_file_digest(path: Union[str, Path], algorithm: str = "sha256") -> str:
    """
    Дайджест содержимого файла

    Файл читается блоками, чтобы не держать большие наборы в памяти целиком.

    Args:
        path: Путь к файлу
        algorithm: Алгоритм хеширования (по умолчанию sha256)

    Returns:
        Hex-строка дайджеста
    """
    hasher = hashlib.new(algorithm)
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            hasher.update(chunk)
    return hasher.hexdigest()


def normalize_digest(digest: str) -> str:
    """Убрать префикс `sha256:` и привести к нижнему регистру"""
    if not digest:
        return ""
    digest = digest.strip().lower()
    if digest.startswith("sha256:"):
        digest = digest[len("sha256:"):]
    return digest


def short_digest(digest: str, length: int = 12) -> str:
    """Короткая форма дайджеста для вывода"""
    return normalize_digest(digest)[:length]


def digests_match(left: str, right: str) -> bool:
    """Сравнить дайджесты без учёта префикса и регистра"""
    return bool(left) and bool(right) and normalize_digest(left) == normalize_digest(right)
