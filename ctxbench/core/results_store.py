"""
ResultsStore — хранение файла результатов

Ответственность:
- Загрузка существующего файла с проверкой дайджеста набора и имени модели
- Атомарное сохранение после каждой контрольной точки
- Сжатая резервная копия перед перезаписью и восстановление из неё
- Восстановление обрезанного JSON (процесс убит во время записи)
- Чистка: удаление записей без тега, пересчёт расходящихся оценок

Использование:
    store = ResultsStore("results/qwen3.ctxbench.json")
    results = store.load_or_create(suite, digest, "qwen3", force=False)
    ...
    store.save(results)
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from pydantic import ValidationError

from ..errors import IncompatibleResultsError, RecoveryError
from ..schemas.results import ResultsFile
from ..schemas.suite import TestSuite
from ..utils.file_ops import atomic_write_text, backup_to_zip, restore_from_zip
from ..utils.hashing import digests_match


logger = logging.getLogger(__name__)

SCORE_TOLERANCE = 0.01


# =============================================================================
# Восстановление JSON
# =============================================================================

@dataclass
class RecoveryOutcome:
    """Результат восстановления обрезанного JSON"""
    text: str
    closed_arrays: int = 0
    closed_objects: int = 0
    removed_bytes: int = 0

    @property
    def was_modified(self) -> bool:
        return bool(self.closed_arrays or self.closed_objects or self.removed_bytes)


@dataclass
class _Frame:
    """Открытый контейнер: где закончился его последний полный элемент"""
    opener: str
    last_complete: int
    after_colon: bool = False


CLOSERS = {"{": "}", "[": "]"}


def _scan(content: str) -> Optional[List[_Frame]]:
    """
    Стек открытых контейнеров с учётом строк и экранирования

    Returns:
        None, если документ сбалансирован, иначе открытые контейнеры
        от внешнего к внутреннему
    """
    stack: List[_Frame] = []
    in_string = False
    escaped = False
    in_literal = False

    def complete(end: int) -> None:
        # Значение закончилось: полный элемент массива или пара ключ-значение
        if stack and (stack[-1].opener == "[" or stack[-1].after_colon):
            stack[-1].last_complete = end
            stack[-1].after_colon = False

    for i, ch in enumerate(content):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
                complete(i + 1)
            continue

        if in_literal:
            if ch.isalnum() or ch in "+-.":
                continue
            in_literal = False
            complete(i)

        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(_Frame(opener=ch, last_complete=i + 1))
        elif ch in "}]":
            if stack and CLOSERS[stack[-1].opener] == ch:
                stack.pop()
                complete(i + 1)
        elif ch == ":":
            if stack:
                stack[-1].after_colon = True
        elif ch.isalnum() or ch in "+-.":
            in_literal = True

    if not stack and not in_string:
        return None
    return stack


def recovery_candidates(content: str) -> Iterator[RecoveryOutcome]:
    """
    Варианты восстановления от самого полного к самому короткому

    Первый вариант обрезает текст до последнего полного значения
    (висячий ключ, двоеточие, недописанный литерал или строка и запятая
    отбрасываются) и дописывает закрывающие скобки в порядке снятия со
    стека. Каждый следующий отбрасывает незаконченный элемент очередного
    внешнего контейнера: если недописанный вопрос или тег не проходит
    валидацию, его можно убрать целиком.

    Сбалансированный документ возвращается без изменений.
    """
    stack = _scan(content)
    if stack is None:
        yield RecoveryOutcome(text=content)
        return

    for depth in range(len(stack), 0, -1):
        frames = stack[:depth]
        cut = frames[-1].last_complete
        openers = [frame.opener for frame in reversed(frames)]
        yield RecoveryOutcome(
            text=content[:cut] + "".join(CLOSERS[o] for o in openers),
            closed_arrays=openers.count("["),
            closed_objects=openers.count("{"),
            removed_bytes=len(content) - cut,
        )


def recover_json(content: str) -> RecoveryOutcome:
    """
    Восстановить обрезанный JSON (процесс убит во время записи)

    Args:
        content: Исходный текст

    Returns:
        RecoveryOutcome с исправленным текстом и статистикой
    """
    return next(recovery_candidates(content))


def recover_results(content: str) -> Tuple[ResultsFile, RecoveryOutcome]:
    """
    Первый вариант восстановления, который проходит валидацию

    Raises:
        RecoveryError: Если ни один вариант не подошёл (partial_path не задан)
    """
    error: Optional[Exception] = None
    for outcome in recovery_candidates(content):
        try:
            return ResultsFile.model_validate_json(outcome.text), outcome
        except (ValidationError, ValueError) as e:
            logger.debug(f"Вариант восстановления отклонён (отброшено байт={outcome.removed_bytes}): {e.__class__.__name__}")
            error = e
    raise RecoveryError(f"Results file could not be recovered: {error}") from error


def cleanup_results(results: ResultsFile) -> int:
    """
    Привести файл результатов в согласованное состояние

    - удаляет записи тегов без имени
    - пересчитывает оценки подкатегорий, категорий и тегов, если
      сохранённое значение расходится с вычисленным больше чем на 0.01

    Returns:
        Количество исправлений
    """
    fixes = 0

    before = len(results.results)
    results.results = [r for r in results.results if r.tag and r.tag.strip()]
    removed = before - len(results.results)
    if removed:
        logger.warning(f"Удалено записей без тега: {removed}")
        fixes += removed

    for result in results.results:
        changed = False
        for category in result.category_results:
            for sub in category.sub_category_results or []:
                if abs(sub.score - sub.computed_score()) > SCORE_TOLERANCE:
                    changed = True
            if abs(category.score - category.computed_score()) > SCORE_TOLERANCE:
                changed = True

        if changed:
            for category in result.category_results:
                category.recalculate()
            fixes += 1

        computed = result.computed_overall_score()
        if changed or abs(result.overall_score - computed) > SCORE_TOLERANCE:
            logger.info(f"Пересчитан общий балл {result.tag}: {result.overall_score:.2f} -> {computed:.2f}")
            result.recalculate()
            fixes += 1

    return fixes


# =============================================================================
# Хранилище
# =============================================================================

@dataclass
class RepairOutcome:
    """Результат режима исправления (fix)"""
    success: bool
    output_path: Optional[Path] = None
    fixes_applied: int = 0
    recovery: Optional[RecoveryOutcome] = None
    partial_path: Optional[Path] = None
    message: str = ""


class ResultsStore:
    """
    Файл результатов на диске

    Атрибуты:
        path: Путь к файлу результатов
        backup_path: Путь к zip-копии (`<path>.backup.zip`)
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.backup_path = self.path.with_name(self.path.name + ".backup.zip")

    # =========================================================================
    # Публичный API
    # =========================================================================

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> ResultsFile:
        """
        Загрузить файл, при повреждении — через восстановление

        Raises:
            FileNotFoundError: Если файла нет
            RecoveryError: Если восстановить не удалось
        """
        content = self.path.read_text(encoding="utf-8")
        try:
            results = ResultsFile.model_validate_json(content)
        except (ValidationError, ValueError) as e:
            logger.warning(f"Файл результатов повреждён ({e.__class__.__name__}), пробуем восстановить")
            try:
                results, outcome = recover_results(content)
            except RecoveryError as recover_error:
                partial = self._save_partial(recover_json(content).text)
                raise RecoveryError(str(recover_error), partial_path=str(partial)) from recover_error
            logger.warning(
                f"Файл восстановлен: закрыто массивов={outcome.closed_arrays}, "
                f"объектов={outcome.closed_objects}, отброшено байт={outcome.removed_bytes}"
            )

        fixes = cleanup_results(results)
        if fixes:
            logger.info(f"Чистка файла результатов: исправлений={fixes}")
        return results

    def load_or_create(
        self,
        suite: TestSuite,
        suite_digest: str,
        model_name: str,
        suite_name: str = "",
        force: bool = False,
    ) -> ResultsFile:
        """
        Загрузить существующий файл или создать новый

        Args:
            suite: Тестовый набор
            suite_digest: SHA-256 файла набора
            model_name: Имя модели текущего запуска
            suite_name: Имя набора для нового файла
            force: Игнорировать несовпадение дайджеста и модели

        Raises:
            IncompatibleResultsError: Если файл от другого набора или модели
        """
        if not self.path.exists():
            logger.info(f"Создан новый файл результатов: {self.path}")
            return ResultsFile(
                test_suite_name=suite_name,
                test_suite_digest=suite_digest,
                test_type=suite.test_type,
                test_description=suite.test_description,
                model_name=model_name,
                max_context_length=suite.max_context_length,
            )

        results = self.load()
        self.check_compatible(results, suite_digest, model_name, force=force)
        if force:
            results.test_suite_digest = suite_digest
        logger.info(f"Загружен файл результатов: {self.path} (тегов: {len(results.results)})")
        return results

    @staticmethod
    def check_compatible(
        results: ResultsFile,
        suite_digest: str,
        model_name: str,
        force: bool = False,
    ) -> None:
        """Проверить, что файл результатов относится к текущему запуску"""
        if results.test_suite_digest and not digests_match(results.test_suite_digest, suite_digest):
            message = (
                f"Test suite digest mismatch: results file has {results.test_suite_digest[:12]}, "
                f"current suite is {suite_digest[:12]}"
            )
            if not force:
                raise IncompatibleResultsError(
                    message, "test_suite_digest", suite_digest, results.test_suite_digest
                )
            logger.warning(f"{message} (--force)")

        if results.model_name and model_name and results.model_name != model_name:
            message = f"Model name mismatch: results file has {results.model_name}, current is {model_name}"
            if not force:
                raise IncompatibleResultsError(message, "model_name", model_name, results.model_name)
            logger.warning(f"{message} (--force)")

    def save(self, results: ResultsFile) -> Path:
        """
        Сохранить файл результатов

        Перед перезаписью существующий файл сжимается в резервную копию.
        Запись атомарная.
        """
        if self.path.exists():
            self.backup()

        atomic_write_text(results.to_json(), self.path)
        logger.debug(f"Результаты сохранены: {self.path}")
        return self.path

    def backup(self) -> Optional[Path]:
        """Сжать текущий файл в `<path>.backup.zip`"""
        if not self.path.exists():
            return None
        try:
            original, compressed = backup_to_zip(self.path, self.backup_path)
        except OSError as e:
            logger.error(f"Не удалось создать резервную копию {self.backup_path}: {e}")
            return None

        ratio = compressed * 100.0 / original if original else 0.0
        logger.info(
            f"Резервная копия: {self.backup_path.name} "
            f"({original:,} -> {compressed:,} байт, {ratio:.1f}%)"
        )
        return self.backup_path

    def restore_backup(self) -> int:
        """
        Восстановить файл результатов из резервной копии

        Returns:
            Размер восстановленного файла

        Raises:
            FileNotFoundError: Если резервной копии нет
        """
        size = restore_from_zip(self.backup_path, self.path)
        logger.info(f"Восстановлено из резервной копии: {self.path} ({size:,} байт)")
        return size

    def repair(self) -> RepairOutcome:
        """
        Режим исправления: восстановить и почистить файл

        Результат пишется рядом в `<stem>.fixed.json`; исходный файл не
        изменяется. Неисправимый текст сохраняется в `<stem>.partial.json`.
        """
        if not self.path.exists():
            return RepairOutcome(success=False, message=f"File not found: {self.path}")

        content = self.path.read_text(encoding="utf-8")
        output_path = self.fixed_path()

        try:
            results = ResultsFile.model_validate_json(content)
        except (ValidationError, ValueError):
            results = None

        if results is not None:
            fixes = cleanup_results(results)
            if not fixes:
                return RepairOutcome(success=True, message="No issues found")
            new_text = results.to_json()
            atomic_write_text(new_text, output_path)
            logger.info(
                f"Исправлено {fixes}, размер {len(content):,} -> {len(new_text):,} байт: {output_path}"
            )
            return RepairOutcome(success=True, output_path=output_path, fixes_applied=fixes)

        try:
            results, outcome = recover_results(content)
        except RecoveryError as e:
            outcome = recover_json(content)
            partial = self._save_partial(outcome.text)
            return RepairOutcome(
                success=False,
                recovery=outcome,
                partial_path=partial,
                message=f"Recovery failed: {e}",
            )

        fixes = cleanup_results(results)
        atomic_write_text(results.to_json(), output_path)
        logger.info(
            f"Восстановлено: закрыто массивов={outcome.closed_arrays}, объектов={outcome.closed_objects}, "
            f"отброшено байт={outcome.removed_bytes}, исправлений={fixes}: {output_path}"
        )
        return RepairOutcome(
            success=True,
            output_path=output_path,
            fixes_applied=fixes,
            recovery=outcome,
        )

    def fixed_path(self) -> Path:
        """`<stem>.fixed.json`, либо с меткой времени для уже исправленного файла"""
        name = self.path.name
        if name.endswith(".fixed.json"):
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            return self.path.with_name(name[: -len(".fixed.json")] + f".fixed_{stamp}.json")
        return self.path.with_name(self.path.stem + ".fixed.json")

    # =========================================================================
    # Приватные методы
    # =========================================================================

    def _save_partial(self, text: str) -> Path:
        partial = self.path.with_name(self.path.stem + ".partial.json")
        atomic_write_text(text, partial)
        logger.error(f"Частично восстановленный текст сохранён для ручного разбора: {partial}")
        return partial


def dump_results(results: ResultsFile) -> dict:
    """Файл результатов как словарь JSON"""
    return json.loads(results.to_json())
