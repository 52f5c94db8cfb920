"""
Файловые операции: YAML/JSON, атомарная запись, zip-бэкап
"""

import json
import os
import tempfile
import zipfile
import yaml
from pathlib import Path
from typing import Any, Tuple, Union

PathLike = Union[str, Path]


def ensure_dir(path: PathLike) -> Path:
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_yaml(path: PathLike) -> Any:
    """
    Прочитать YAML (пустой файл даёт {})

    Raises:
        FileNotFoundError: Файла нет
        yaml.YAMLError: Синтаксическая ошибка
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"YAML file not found: {path}")
    return yaml.safe_load(path.read_text(encoding="utf-8")) or {}


def load_json(path: PathLike) -> Any:
    """JSON с допуском BOM: наборы тестов часто правят в Windows-редакторах"""
    return json.loads(Path(path).read_text(encoding="utf-8-sig"))


def save_json(data: Any, path: PathLike, indent: int = 2) -> None:
    """Записать JSON атомарно (кириллица без экранирования)"""
    atomic_write_text(json.dumps(data, ensure_ascii=False, indent=indent), path)


def atomic_write_text(text: str, path: PathLike) -> None:
    """
    Атомарная запись текста: временный файл в той же папке + os.replace

    Читатель всегда видит либо старую, либо новую версию файла целиком.
    """
    path = Path(path)
    ensure_dir(path.parent)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def backup_to_zip(source: PathLike, backup_path: PathLike) -> Tuple[int, int]:
    """
    Сжать файл в zip-архив (перезаписывая прежний архив)

    Args:
        source: Исходный файл
        backup_path: Путь к архиву

    Returns:
        (исходный размер, размер архива) в байтах
    """
    source = Path(source)
    backup_path = Path(backup_path)
    ensure_dir(backup_path.parent)

    tmp_path = backup_path.with_name(backup_path.name + ".tmp")
    with zipfile.ZipFile(tmp_path, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
        zf.write(source, arcname=source.name)
    os.replace(tmp_path, backup_path)

    return source.stat().st_size, backup_path.stat().st_size


def restore_from_zip(backup_path: PathLike, target: PathLike) -> int:
    """
    Восстановить файл из zip-архива

    Содержимое сначала распаковывается в `<target>.restore.tmp`,
    затем заменяет целевой файл.

    Returns:
        Размер восстановленного файла в байтах

    Raises:
        FileNotFoundError: Если архива нет
        ValueError: Если архив пустой
    """
    backup_path = Path(backup_path)
    target = Path(target)

    if not backup_path.exists():
        raise FileNotFoundError(f"Backup not found: {backup_path}")

    restore_tmp = target.with_name(target.name + ".restore.tmp")
    with zipfile.ZipFile(backup_path, 'r') as zf:
        names = zf.namelist()
        if not names:
            raise ValueError(f"Backup archive is empty: {backup_path}")
        with zf.open(names[0]) as src, open(restore_tmp, 'wb') as dst:
            dst.write(src.read())

    os.replace(restore_tmp, target)
    return target.stat().st_size
