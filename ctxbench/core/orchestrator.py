"""
BenchmarkRunner — оркестратор прогона тегов модели

Центральный компонент, отвечающий за:
- Раскрытие шаблонов тегов и загрузку отсутствующих моделей (--ondemand)
- Pre-flight: метаданные, thinking, предел контекста, инструменты
- Загрузку/выгрузку моделей на сервере
- Цикл категорий с накоплением одного диалога
- Повторы запросов, цикл вызовов инструментов, учёт контекста, калибровку
- Оценку ответов судьёй (последовательно или в фоне)
- Сохранение результатов после каждой категории

Состояния тега:
    NotStarted -> Preflight -> Loaded -> PerCategory(Testing -> [Judging])
        -> Complete | PartialSaved | Aborted

Использование:
    from ctxbench.core import BenchmarkRunner, RunOptions

    runner = BenchmarkRunner(suite, digest, ResultsStore(path), RunOptions(model_name="qwen3"))
    outcomes = await runner.run(["q4_K_M", "q8_0"])
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List, Tuple, Callable, Awaitable, Any

from .. import __version__
from ..clients.ollama import OllamaClient, model_names_match
from ..config.settings import get_settings
from ..errors import ContextResolutionError, TagAbortedError, RunCancelled
from ..schemas.messages import ChatMessage, ChatResult
from ..schemas.results import (
    CORRECT_SCORE,
    CategoryResult,
    QuantResult,
    QuestionResult,
    ResultsFile,
    SubCategoryResult,
    TestOptions,
    ToolUsage,
)
from ..schemas.suite import Category, Question, SubCategory, TestSuite
from ..utils.file_ops import ensure_dir
from ..utils.tokenizer import estimate_tokens
from .calibration import CalibrationRecorder, calibration_file_name
from .context_tracker import ContextTracker
from .judgment import (
    CloudJudge,
    JudgmentItem,
    JudgmentService,
    LocalJudge,
    ParallelJudgmentQueue,
    collect_pending,
    judge_tag_serial,
)
from .preflight import (
    ContextResolution,
    ModelInfo,
    cached_preflight,
    detect_thinking,
    fetch_model_info,
    new_preflight_result,
    resolve_context,
    run_tools_preflight,
)
from .pull import PullManager
from .results_store import ResultsStore
from .tags import expand_tags, repository_of
from .tools import execute as execute_tool, get_tool_definitions, supports_tools


logger = logging.getLogger(__name__)


# =============================================================================
# Итог прогона тега
# =============================================================================

class TagStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    FATAL = "fatal"


@dataclass
class TagOutcome:
    """
    Итог прогона одного тега

    Фатальная ошибка тега не исключение: прогон остальных тегов
    продолжается.
    """
    tag: str
    status: TagStatus
    reason: str = ""

    @classmethod
    def completed(cls, tag: str) -> "TagOutcome":
        return cls(tag, TagStatus.COMPLETED)

    @classmethod
    def partial(cls, tag: str, reason: str = "cancelled") -> "TagOutcome":
        return cls(tag, TagStatus.PARTIAL, reason)

    @classmethod
    def skipped(cls, tag: str, reason: str) -> "TagOutcome":
        return cls(tag, TagStatus.SKIPPED, reason)

    @classmethod
    def fatal(cls, tag: str, reason: str) -> "TagOutcome":
        return cls(tag, TagStatus.FATAL, reason)

    def describe(self) -> str:
        return f"{self.status.value}: {self.reason}" if self.reason else self.status.value


@dataclass
class RunOptions:
    """Параметры запуска (из аргументов CLI)"""
    model_name: str
    suite_name: str = ""
    test_options: TestOptions = field(default_factory=TestOptions)
    category_limit: Optional[str] = None
    base_tag: Optional[str] = None
    force: bool = False
    rejudge: bool = False
    parallel_judge: bool = False
    calibrate: bool = False
    on_demand: bool = False
    calibration_dir: Optional[str] = None


# =============================================================================
# Основной класс
# =============================================================================

class BenchmarkRunner:
    """
    Оркестратор прогона тестового набора по тегам модели

    Теги обрабатываются строго по очереди: они делят память сервера.
    Внутри тега вопросы идут в порядке набора, каждый видит весь
    предыдущий диалог.

    Атрибуты:
        client: Клиент сервера инференса с тестируемой моделью
        judge: LocalJudge, CloudJudge или None (оценка по вхождению эталона)
        judgment: JudgmentService вокруг судьи
        store: Файл результатов на диске
        results: Загруженный ResultsFile (после run())
        cancel_event: Флаг остановки (Ctrl+C)

    Example:
        runner = BenchmarkRunner(suite, digest, store, options, judge=LocalJudge(client, "qwen3:32b"))
        outcomes = await runner.run(["q4_*"])
        for outcome in outcomes:
            print(outcome.tag, outcome.describe())
    """

    def __init__(
        self,
        suite: TestSuite,
        suite_digest: str,
        store: ResultsStore,
        options: RunOptions,
        client: Optional[OllamaClient] = None,
        judge=None,
        settings=None,
        judgment: Optional[JudgmentService] = None,
        pull_manager: Optional[PullManager] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            suite: Тестовый набор
            suite_digest: SHA-256 файла набора
            store: Файл результатов
            options: Параметры запуска
            client: Клиент сервера (если None — из Settings)
            judge: Судья (если None — без судьи)
            settings: Настройки (если None — get_settings())
            judgment: Готовый JudgmentService (иначе строится из settings)
            pull_manager: Загрузчик моделей для --ondemand
            sleep: Асинхронная пауза между повторами
        """
        self._settings = settings or get_settings()
        self.suite = suite
        self.suite_digest = suite_digest
        self.store = store
        self.options = options

        timeout = options.test_options.timeout or None
        self.client = client or OllamaClient.from_settings(self._settings, timeout=timeout)
        self.judge = judge
        if judgment is None and judge is not None:
            judgment = JudgmentService.from_settings(self._settings, judge)
        self.judgment = judgment
        self.pull_manager = pull_manager or PullManager.from_settings(self.client, self._settings)
        self._sleep = sleep

        self.results: Optional[ResultsFile] = None
        self.cancel_event = asyncio.Event()

        # Состояние текущего тега
        self._thinking = False
        self._tools_enabled = False
        self._effective_max_context = 0
        self._judge_server_version: Optional[str] = None

        logger.info(
            f"BenchmarkRunner инициализирован (модель: {options.model_name}, "
            f"судья: {judge.name if judge is not None else 'нет'})"
        )

    # =========================================================================
    # Публичный API
    # =========================================================================

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def request_cancel(self) -> None:
        """Остановить прогон: текущий запрос бросается, результаты сохраняются"""
        if not self.cancel_event.is_set():
            logger.warning("Запрошена остановка, сохраняем частичные результаты")
            print("\n  Остановка... частичные результаты будут сохранены")
        self.cancel_event.set()

    async def run(self, tag_patterns: List[str]) -> List[TagOutcome]:
        """
        Прогнать тестовый набор по тегам

        Args:
            tag_patterns: Теги и шаблоны (* и ?)

        Returns:
            Итоги по тегам в порядке прогона

        Raises:
            IncompatibleResultsError: Файл результатов от другого набора/модели
            RecoveryError: Файл результатов повреждён безвозвратно
        """
        self.results = self.store.load_or_create(
            self.suite,
            self.suite_digest,
            self.options.model_name,
            suite_name=self.options.suite_name,
            force=self.options.force,
        )
        await self._fill_run_metadata()

        available = [
            entry.get("name") or entry.get("model") or ""
            for entry in await self._io(self.client.list_models)
        ]
        tags = expand_tags(self.options.model_name, tag_patterns, available)
        if not tags:
            logger.warning(f"Нет тегов для теста: {tag_patterns}")
            return []

        print()
        print("=" * 60)
        print(f" Тестирование: {self.options.model_name}")
        print("=" * 60)
        print(f" Теги: {', '.join(tags)}")
        print(f" Категорий: {len(self.suite.categories)}, вопросов: {self.suite.total_questions}")
        print(f" Судья: {self._judge_label()}")
        print("=" * 60)

        outcomes: List[TagOutcome] = []
        for index, tag in enumerate(tags, 1):
            if self.cancelled:
                break

            print()
            print(f"[{index}/{len(tags)}] {tag}")
            outcome = await self.process_tag(tag)
            outcomes.append(outcome)
            print(f"     Итог: {outcome.describe()}")
            logger.info(f"Тег {tag}: {outcome.describe()}")

        self.store.save(self.results)

        print()
        print("=" * 60)
        print(" Тестирование завершено")
        print(f"    Результаты: {self.store.path}")
        print("=" * 60)
        return outcomes

    async def process_tag(self, tag: str) -> TagOutcome:
        """
        Прогнать один тег

        Полностью пройденный тег с тем же набором категорий пропускается
        (с --rejudge только переоценивается).
        """
        existing = self.results.get_tag(tag)

        if existing is not None and existing.is_complete and not self.options.force:
            if existing.category_names == self._requested_category_names(existing):
                if self.options.rejudge:
                    return await self._rejudge_tag(existing)
                print("     Уже протестирован, пропуск")
                return TagOutcome.skipped(tag, "already complete")

        entry = await self._io(self.client.find_local_model, tag)
        pulled = False
        if entry is None:
            if not self.options.on_demand:
                logger.warning(f"Модель {tag} не найдена на сервере")
                print(f"     Модель не найдена на сервере (используйте --ondemand)")
                return TagOutcome.skipped(tag, "model not found on server")

            print(f"     Загрузка модели {tag}...")
            pull_result = await self._io(self.pull_manager.pull, tag)
            if not pull_result.success:
                return TagOutcome.skipped(tag, f"pull failed: {pull_result.error}")
            pulled = True

        try:
            return await self._test_tag(tag, existing, pulled)
        finally:
            if pulled:
                await self._io(self.client.unload_model, tag)
                await self._io(self.client.delete_model, tag)
                print(f"     Модель {tag} удалена с сервера")

    async def run_categories(
        self,
        tag_result: QuantResult,
        resolution: ContextResolution,
        judge_queue: Optional[ParallelJudgmentQueue] = None,
    ) -> None:
        """
        Цикл категорий одного тега

        Завершённые категории не тестируются заново, но их контекст
        возвращается в диалог с сообщением-заглушкой модели.

        Raises:
            TagAbortedError: Запрос не удался после всех повторов
            RunCancelled: Остановка пользователем
        """
        tag = tag_result.tag
        bench = self._settings.bench
        header = self.suite.context_header or bench.context_header
        self._effective_max_context = resolution.effective_max_context

        messages: List[ChatMessage] = []
        if self.suite.system_prompt:
            messages.append(ChatMessage.system(self.suite.system_prompt))

        calibration = CalibrationRecorder(tag, __version__) if self.options.calibrate else None

        try:
            for index, category in enumerate(resolution.categories):
                if self.cancelled:
                    raise RunCancelled("cancelled before category")

                context_message = f"--- {header} ---\n\n{category.context}"
                existing = tag_result.get_category(category.name)

                if existing is not None and existing.is_complete and not self.options.force:
                    messages.append(ChatMessage.user(context_message))
                    messages.append(ChatMessage.assistant(bench.placeholder_ack))
                    print(f"     {category.name}: уже пройдена, контекст восстановлен")
                    continue

                prefix: Optional[str] = context_message
                if index == 0 and self.suite.instructions:
                    prefix = f"{self.suite.instructions}\n\n{context_message}"

                category_result = self._reset_category(tag_result, category)
                tracker = ContextTracker(category.context_length, resolution.effective_max_context)
                if calibration is not None:
                    calibration.start_category(category.name, category.context_length)

                print(f"     {category.name} ({category.context_length:,} токенов, "
                      f"вопросов: {category.total_questions})")

                for sub, question in category.iter_questions():
                    question_result = await self._ask_question(
                        tag, messages, question, prefix, tracker, calibration
                    )
                    prefix = None
                    self._question_list(category_result, sub).append(question_result)

                    if judge_queue is not None and question_result.needs_judgment:
                        judge_queue.enqueue(JudgmentItem(question_result, question, category, sub, tag_result))

                    logger.debug(f"{tag} Q{question.id}: {tracker.summary()}")

                self._finish_category(category_result, tracker)
                if calibration is not None:
                    calibration.finish_category()
                tag_result.recalculate()
                self.store.save(self.results)

                status = "OVERFLOW" if tracker.has_overflowed else "OK"
                if self.judge is None:
                    print(f"       Оценка: {category_result.score:.1f}% "
                          f"({category_result.correct_answers}/{category_result.total_questions}) [{status}]")
                else:
                    print(f"       Ответов: {category_result.total_questions} [{status}]")
                print(f"       {tracker.peak_summary()}")
        finally:
            if calibration is not None:
                self._save_calibration(calibration, tag)

    async def exchange(
        self,
        tag: str,
        messages: List[ChatMessage],
        tools: Optional[List[dict]] = None,
    ) -> Tuple[ChatResult, List[ToolUsage]]:
        """
        Запрос к модели с повторами

        Raises:
            TagAbortedError: Все попытки исчерпаны
            RunCancelled: Остановка пользователем
        """
        bench = self._settings.bench
        attempts = bench.max_retry_attempts
        last_error: Optional[str] = None

        for attempt in range(1, attempts + 1):
            if tools:
                response, usage = await self._chat_with_tools(tag, messages, tools)
            else:
                response = await self._call(self._chat, tag, messages, None)
                usage = []

            if response is not None and response.success:
                return response, usage

            last_error = response.error if response is not None else "tool call loop did not finish"
            if attempt < attempts:
                logger.warning(f"{tag}: повтор {attempt}/{attempts}: {last_error}")
                print(f"       Повтор {attempt}/{attempts}: {last_error}")
                await self._race(self._sleep(bench.retry_delay_ms / 1000.0))

        logger.error(f"{tag}: запрос не удался после {attempts} попыток: {last_error}")
        raise TagAbortedError(f"API error after {attempts} retries: {last_error}")

    async def judge_existing(self, tags: Optional[List[str]] = None) -> int:
        """
        Оценить ответы уже сохранённых тегов (команда judge)

        Returns:
            Количество оценённых ответов
        """
        if self.judgment is None:
            raise ValueError("judge is not configured")

        self.results = self.store.load()
        self.store.check_compatible(self.results, self.suite_digest, self.results.model_name, force=self.options.force)
        await self._fetch_judge_server_version()
        self._fill_judge_metadata(self.results)

        judged = 0
        for tag_result in self.results.results:
            if tags and tag_result.tag not in tags:
                continue
            if self.cancelled:
                break
            print(f"  {tag_result.tag}...")
            judged += await self._judge_serial(tag_result, rejudge=self.options.rejudge)
            self._fill_judge_metadata(tag_result)
            self.store.save(self.results)
        return judged

    # =========================================================================
    # Прогон тега
    # =========================================================================

    async def _test_tag(self, tag: str, existing: Optional[QuantResult], pulled: bool) -> TagOutcome:
        is_new = existing is None

        info = await self._io(fetch_model_info, self.client, tag, self._settings.bench.default_max_context)
        if info is None:
            return TagOutcome.fatal(tag, "model metadata unavailable")

        tag_result = existing or self._new_tag_result(tag)
        if is_new:
            self.results.results.append(tag_result)
        self._fill_tag_metadata(tag_result, info, pulled)
        print(f"     {info.family} {info.parameter_size} {info.quantization_level}, "
              f"контекст модели: {info.max_context:,}")

        judge_queue: Optional[ParallelJudgmentQueue] = None
        cancelled = False
        try:
            await self._ensure_loaded(tag)

            resolution, skip_reason = await self._preflight(tag_result, info)
            if skip_reason:
                print(f"     Пропуск: {skip_reason}")
                self._discard(tag_result, is_new)
                await self._io(self.client.unload_model, tag)
                self.store.save(self.results)
                return TagOutcome.skipped(tag, skip_reason)

            if self.options.parallel_judge and self.judgment is not None:
                await self._load_judge()
                judge_queue = ParallelJudgmentQueue(self.judgment, self.suite)
                judge_queue.start()

            await self.run_categories(tag_result, resolution, judge_queue)

        except ContextResolutionError as e:
            logger.error(f"{tag}: {e}")
            self._discard(tag_result, is_new)
            await self._io(self.client.unload_model, tag)
            self.store.save(self.results)
            return TagOutcome.fatal(tag, str(e))

        except TagAbortedError as e:
            print(f"     Прервано: {e}")
            if judge_queue is not None:
                await judge_queue.cancel()
                await self._unload_judge()
            await self._io(self.client.unload_model, tag)
            self._discard(tag_result, is_new)
            self.store.save(self.results)
            return TagOutcome.fatal(tag, str(e))

        except RunCancelled:
            cancelled = True

        await self._io(self.client.unload_model, tag)

        if judge_queue is not None:
            judge_queue.close()
            if not cancelled:
                print(f"     Ожидание оценок: {judge_queue.completed}/{judge_queue.queued}")
            try:
                await self._race(judge_queue.join())
            except RunCancelled:
                cancelled = True
                await judge_queue.cancel()
            print(f"     {judge_queue.progress.summary()}")

            # Ответы из прошлых запусков, не попавшие в очередь
            if not cancelled and collect_pending(tag_result, self.suite):
                try:
                    await self._call(
                        judge_tag_serial, self.judgment, tag_result, self.suite, False, self.cancel_event
                    )
                except RunCancelled:
                    cancelled = True
            await self._unload_judge()
        elif self.judgment is not None and not cancelled:
            await self._judge_serial(tag_result, rejudge=self.options.rejudge)

        return self._finish_tag(tag_result, cancelled or self.cancelled)

    async def _rejudge_tag(self, tag_result: QuantResult) -> TagOutcome:
        if self.judgment is None:
            logger.warning("--rejudge без судьи: пропуск")
            return TagOutcome.skipped(tag_result.tag, "no judge for rejudge")

        print("     Уже протестирован, переоценка ответов")
        await self._judge_serial(tag_result, rejudge=True)
        self._fill_judge_metadata(tag_result)
        tag_result.recalculate()
        self.store.save(self.results)
        if self.cancelled:
            return TagOutcome.partial(tag_result.tag)
        return TagOutcome.completed(tag_result.tag)

    def _finish_tag(self, tag_result: QuantResult, cancelled: bool) -> TagOutcome:
        tag_result.recalculate()
        if cancelled:
            tag_result.is_complete = False
            self.store.save(self.results)
            return TagOutcome.partial(tag_result.tag)

        requested = self._requested_category_names(tag_result)
        tag_result.completed_at = datetime.now()
        tag_result.is_complete = (
            all(c.is_complete for c in tag_result.category_results)
            and tag_result.category_names == requested
        )
        self.store.save(self.results)
        print(f"     Общая оценка: {tag_result.overall_score:.1f}% "
              f"({tag_result.correct_answers}/{tag_result.total_questions})")
        return TagOutcome.completed(tag_result.tag)

    def _discard(self, tag_result: QuantResult, is_new: bool) -> None:
        """Убрать тег, созданный в этом запуске"""
        if is_new and tag_result in self.results.results:
            self.results.results.remove(tag_result)
            logger.info(f"Тег {tag_result.tag} удалён из результатов")

    def _requested_category_names(self, tag_result: Optional[QuantResult] = None) -> List[str]:
        """Категории, которые будут протестированы (с учётом -L и кэша pre-flight)"""
        preflight = tag_result.preflight_result if tag_result is not None else None
        if preflight is not None and preflight.model_max_context_length > 0:
            try:
                return resolve_context(
                    self.suite,
                    preflight.model_max_context_length,
                    preflight.thinking_enabled,
                    self.options.category_limit,
                ).category_names
            except ContextResolutionError:
                return []

        names = [c.name for c in self.suite.categories]
        if self.options.category_limit:
            limit = self.suite.get_category(self.options.category_limit)
            if limit is not None:
                names = names[:names.index(limit.name) + 1]
        return names

    # =========================================================================
    # Pre-flight и загрузка моделей
    # =========================================================================

    async def _preflight(self, tag_result: QuantResult, info: ModelInfo) -> Tuple[ContextResolution, Optional[str]]:
        """
        Returns:
            (предел контекста, причина пропуска тега или None)
        """
        tag = tag_result.tag
        cached = None if self.options.force else cached_preflight(tag_result.preflight_result, info.digest)

        if cached is not None:
            thinking = cached.thinking_enabled
            logger.info(f"{tag}: pre-flight из кэша ({info.short_digest})")
        else:
            print("     Проверка режима рассуждений...")
            thinking = await self._call(detect_thinking, self.client, tag)

        resolution = resolve_context(self.suite, info.max_context, thinking, self.options.category_limit)
        preflight = new_preflight_result(
            info.digest, thinking, resolution.overhead, info.max_context, resolution.effective_max_context
        )
        if cached is not None:
            preflight.tools_preflight_passed = cached.tools_preflight_passed
            preflight.checked_at = cached.checked_at
        tag_result.preflight_result = preflight

        self._thinking = thinking
        print(f"     Thinking: {'да' if thinking else 'нет'}, контекст теста: "
              f"{resolution.effective_max_context:,} ({resolution.reason})")

        self._tools_enabled = False
        if self.suite.needs_tools:
            if info.template and not supports_tools(info.template):
                return resolution, "model template does not support tools"
            if preflight.tools_preflight_passed is None:
                print("     Pre-flight инструментов...")
                preflight.tools_preflight_passed = await self._call(run_tools_preflight, self.client, tag)
            if not preflight.tools_preflight_passed:
                return resolution, "tools pre-flight failed"
            self._tools_enabled = True

        return resolution, None

    async def _ensure_loaded(self, tag: str) -> None:
        """
        В памяти сервера должна остаться только тестируемая модель

        Raises:
            TagAbortedError: Модель не загрузилась
        """
        running = [
            entry.get("name") or entry.get("model") or ""
            for entry in await self._io(self.client.list_running)
        ]

        if len(running) == 1 and model_names_match(running[0], tag):
            logger.info(f"{tag} уже загружена, продлеваем keep_alive")
            await self._io(self.client.load_model, tag)
            return

        if running:
            print(f"     Выгрузка моделей: {', '.join(running)}")
            await self._io(self.client.unload_all)

        print(f"     Загрузка {tag} в память...")
        if not await self._io(self.client.load_model, tag):
            raise TagAbortedError(f"Failed to load model {tag}")

    async def _load_judge(self) -> None:
        if isinstance(self.judge, LocalJudge):
            print(f"     Загрузка судьи {self.judge.model}...")
            await self._io(self.judge.client.load_model, self.judge.model)

    async def _unload_judge(self) -> None:
        if isinstance(self.judge, LocalJudge):
            await self._io(self.judge.client.unload_model, self.judge.model)

    async def _judge_serial(self, tag_result: QuantResult, rejudge: bool = False) -> int:
        """
        Последовательная оценка ответов тега

        По Ctrl+C ожидание бросается сразу; поток с текущим запросом к
        судье доработает сам и дальше не пойдёт.
        """
        pending = [item.question_result for item in collect_pending(tag_result, self.suite, rejudge)]
        before = [q.judgment for q in pending]

        await self._load_judge()
        try:
            judged = await self._call(
                judge_tag_serial, self.judgment, tag_result, self.suite, rejudge, self.cancel_event
            )
        except RunCancelled:
            judged = sum(1 for q, old in zip(pending, before) if q.judgment is not old)
            logger.warning(f"{tag_result.tag}: оценка остановлена, оценено {judged}/{len(pending)}")
        finally:
            await self._unload_judge()
        print(f"     Оценено ответов: {judged}")
        return judged

    # =========================================================================
    # Вопросы
    # =========================================================================

    async def _ask_question(
        self,
        tag: str,
        messages: List[ChatMessage],
        question: Question,
        prefix: Optional[str],
        tracker: ContextTracker,
        calibration: Optional[CalibrationRecorder],
    ) -> QuestionResult:
        """Задать вопрос; вопрос и ответ добавляются в диалог"""
        content = f"{prefix}\n\n{question.text}" if prefix else question.text
        question_message = ChatMessage.user(content)
        tools = get_tool_definitions(self.suite.enabled_tools) if self._tools_enabled else None

        started = time.monotonic()
        response, usage = await self.exchange(tag, messages + [question_message], tools)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        thinking_tokens = estimate_tokens(response.thinking) if response.thinking else 0
        output_tokens = (response.completion_tokens or 0) + thinking_tokens
        tracker.update_from_response(response.prompt_tokens, output_tokens, thinking_tokens)

        result = QuestionResult(
            question_id=question.id,
            question=question.text,
            reference_answer=question.reference_answer,
            about_category=question.about_category,
            model_answer=response.content,
            model_thinking=response.thinking or None,
            tools_used=usage,
            response_time_ms=elapsed_ms,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            thinking_tokens=thinking_tokens or None,
            prompt_toks_per_sec=response.prompt_toks_per_sec,
            eval_toks_per_sec=response.eval_toks_per_sec,
            total_duration_ms=response.total_duration // 1_000_000 if response.total_duration else None,
            load_duration_ms=response.load_duration // 1_000_000 if response.load_duration else None,
            context_tokens_used=(response.prompt_tokens or 0) + output_tokens,
            tokens=response.logprobs,
        )

        if calibration is not None:
            self._track_calibration(calibration, messages, prefix, question, response)

        messages.append(question_message)
        messages.append(ChatMessage.assistant(response.content))

        # Без судьи: эталон должен встречаться в ответе
        if self.judge is None and question.reference_answer:
            if question.reference_answer.lower() in response.content.lower():
                result.score = CORRECT_SCORE

        return result

    async def _chat_with_tools(
        self,
        tag: str,
        messages: List[ChatMessage],
        tools: List[dict],
    ) -> Tuple[Optional[ChatResult], List[ToolUsage]]:
        """
        Цикл вызовов инструментов

        Returns:
            (итоговый ответ или None, если модель не закончила за
            max_tool_iterations раундов; использованные инструменты)
        """
        conversation = list(messages)
        usage: List[ToolUsage] = []

        for _ in range(self._settings.bench.max_tool_iterations):
            response = await self._call(self._chat, tag, conversation, tools)
            if not response.success or not response.has_tool_calls:
                return response, usage

            conversation.append(ChatMessage.assistant(response.content, response.tool_calls))
            for call in response.tool_calls:
                arguments = call.arguments
                output = execute_tool(call.name, arguments)
                logger.debug(f"Инструмент {call.name}({arguments}) -> {output}")

                if usage and usage[-1].tool_name == call.name:
                    usage[-1].call_count += 1
                    usage[-1].arguments_json = json.dumps(arguments)
                    usage[-1].result = output
                else:
                    usage.append(ToolUsage(
                        tool_name=call.name,
                        call_count=1,
                        arguments_json=json.dumps(arguments),
                        result=output,
                    ))
                conversation.append(ChatMessage.tool_response(output))

        logger.warning(f"{tag}: модель не закончила вызовы инструментов за "
                       f"{self._settings.bench.max_tool_iterations} раундов")
        return None, usage

    def _chat(self, tag: str, messages: List[ChatMessage], tools: Optional[List[dict]]) -> ChatResult:
        options = {"num_ctx": self._effective_max_context}
        if self.suite.num_predict:
            options["num_predict"] = self.suite.num_predict
        options.update(self.options.test_options.to_model_options())

        think = self.options.test_options.think_value()
        if not self._thinking and not think:
            think = None

        return self.client.chat(tag, messages, options=options, think=think, tools=tools)

    def _track_calibration(
        self,
        calibration: CalibrationRecorder,
        history: List[ChatMessage],
        prefix: Optional[str],
        question: Question,
        response: ChatResult,
    ) -> None:
        """Шаги калибровки: предыдущий ответ, инструкции, контекст, вопрос"""
        prompt = response.prompt_tokens or 0
        output = response.completion_tokens or 0

        if history and history[-1].role == "assistant" and history[-1].content:
            number = sum(1 for m in history if m.role == "assistant")
            calibration.track_step(f"Answer{number}", "answer", history[-1].content, prompt, output)

        if prefix:
            instructions = self.suite.instructions or ""
            if instructions and prefix.startswith(instructions):
                calibration.track_step("Instructions", "instructions", instructions, prompt, output)
                context = prefix[len(instructions):].lstrip("\r\n")
                if context:
                    calibration.track_step("Context", "context", context, prompt, output)
            else:
                calibration.track_step("Context", "context", prefix, prompt, output)

        calibration.track_step(f"Question{question.id}", "question", question.text, prompt, output)

    # =========================================================================
    # Результаты
    # =========================================================================

    def _new_tag_result(self, tag: str) -> QuantResult:
        if self.options.base_tag:
            is_base = self.options.base_tag == tag
        else:
            is_base = self.results.base_result() is None and not self.results.results
        return QuantResult(
            tag=tag,
            model_name=self.options.model_name,
            is_base=is_base,
            started_at=datetime.now(),
        )

    def _fill_tag_metadata(self, tag_result: QuantResult, info: ModelInfo, pulled: bool) -> None:
        tag_result.family = info.family
        tag_result.parameter_size = info.parameter_size
        tag_result.quantization_type = info.quantization_level
        tag_result.disk_size_bytes = info.size
        tag_result.digest = info.digest
        tag_result.short_digest = info.short_digest
        tag_result.pulled_on_demand = tag_result.pulled_on_demand or pulled
        if tag_result.tag.lower().startswith("hf.co/"):
            tag_result.repository_url = f"https://{repository_of(tag_result.tag)}"
        if self.options.base_tag == tag_result.tag:
            tag_result.is_base = True
        if tag_result.started_at is None:
            tag_result.started_at = datetime.now()

        tag_result.test_server_url = self.client.base_url
        tag_result.server_version = self.results.server_version
        tag_result.test_options = self.options.test_options
        self._fill_judge_metadata(tag_result)

    async def _fetch_judge_server_version(self) -> None:
        if isinstance(self.judge, LocalJudge):
            self._judge_server_version = await self._io(self.judge.client.version)

    def _fill_judge_metadata(self, target) -> None:
        """Имя и провайдер судьи для ResultsFile или QuantResult"""
        if self.judge is None:
            return
        target.judge_model = self.judge.name
        target.judge_provider = self.judge.provider or "ollama"
        target.judge_server_version = self._judge_server_version

    async def _fill_run_metadata(self) -> None:
        results = self.results
        results.options = self.options.test_options
        results.tool_version = __version__
        results.test_server_url = self.client.base_url
        results.server_version = await self._io(self.client.version)
        results.category_limit = self.options.category_limit
        results.max_context_length = self.suite.max_context_length

        if self.judge is not None:
            await self._fetch_judge_server_version()
            self._fill_judge_metadata(results)
            if isinstance(self.judge, LocalJudge):
                results.judge_server_url = self.judge.client.base_url
            elif isinstance(self.judge, CloudJudge):
                results.judge_api_version = self.judge.cloud.api_version()

    @staticmethod
    def _reset_category(tag_result: QuantResult, category: Category) -> CategoryResult:
        """Результат категории для (пере)прогона: вопросы начинаются заново"""
        category_result = tag_result.get_category(category.name)
        if category_result is None:
            category_result = CategoryResult(category=category.name)
            tag_result.category_results.append(category_result)

        category_result.target_context_length = category.context_length
        category_result.is_complete = False
        if category.sub_categories:
            category_result.sub_category_results = []
            category_result.question_results = None
        else:
            category_result.question_results = []
            category_result.sub_category_results = None
        return category_result

    @staticmethod
    def _question_list(category_result: CategoryResult, sub: Optional[SubCategory]) -> List[QuestionResult]:
        if sub is None:
            return category_result.question_results

        sub_result = category_result.get_sub_category(sub.name)
        if sub_result is None:
            sub_result = SubCategoryResult(sub_category=sub.name)
            category_result.sub_category_results.append(sub_result)
        return sub_result.question_results

    @staticmethod
    def _finish_category(category_result: CategoryResult, tracker: ContextTracker) -> None:
        category_result.recalculate()
        category_result.update_averages()
        category_result.context_tokens_used = tracker.total_used
        category_result.peak_context_tokens = tracker.peak_total_used
        category_result.context_usage_percent = tracker.peak_usage_percent
        category_result.context_overflowed = tracker.has_overflowed
        category_result.total_thinking_tokens = tracker.cumulative_thinking_tokens
        category_result.peak_thinking_tokens = tracker.peak_thinking_tokens
        category_result.is_complete = True

    def _save_calibration(self, calibration: CalibrationRecorder, tag: str) -> None:
        directory = Path(self.options.calibration_dir or self._settings.paths.results_dir)
        ensure_dir(directory)
        calibration.data.model_name = tag
        path = calibration.save(directory / calibration_file_name(self.options.model_name, tag))
        if path is not None:
            print(f"     Калибровка: {path}")

    def _judge_label(self) -> str:
        if self.judge is None:
            return "нет (сравнение с эталоном)"
        mode = "параллельно" if self.options.parallel_judge else "последовательно"
        return f"{self.judge.name} ({self.judge.provider or 'ollama'}, {mode})"

    # =========================================================================
    # Асинхронные обёртки
    # =========================================================================

    @staticmethod
    async def _io(func, *args, **kwargs):
        """Блокирующий вызов клиента в отдельном потоке"""
        return await asyncio.to_thread(func, *args, **kwargs)

    async def _call(self, func, *args, **kwargs):
        """Блокирующий вызов, который бросается по Ctrl+C"""
        return await self._race(asyncio.to_thread(func, *args, **kwargs))

    async def _race(self, awaitable):
        """
        Дождаться awaitable или флага остановки

        Raises:
            RunCancelled: Флаг остановки выставлен раньше
        """
        if self.cancel_event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunCancelled("cancelled by user")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        # Поток с HTTP запросом доработает сам, его ответ отбрасывается
        task.cancel()
        raise RunCancelled("cancelled by user")
