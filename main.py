"""
ctxbench CLI
Точка входа для всех операций бенчмарка.

Примеры:
    # Прогон тегов модели по набору
    python main.py run -m qwen3 -q "q4_K_M,q8_0,fp16" -s suites/ctxbench.json --judge qwen3:32b
    python main.py run -m qwen3 -q "q*" -s ctxbench --judge @anthropic/claude-sonnet-4-5 --mode parallel

    # Результаты
    python main.py judge results/qwen3.ctxbench.json -s ctxbench --judge qwen3:32b
    python main.py score results/qwen3.ctxbench.json --base fp16
    python main.py view results/qwen3.ctxbench.json --format html --charts

    # Обслуживание
    python main.py fix results/qwen3.ctxbench.json
    python main.py restore results/qwen3.ctxbench.json
    python main.py pull hf.co/unsloth/Qwen3-8B-GGUF:Q4_K_M
    python main.py info
"""

import asyncio
import argparse
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).parent))

from dotenv import load_dotenv
load_dotenv()

from ctxbench import __version__
from ctxbench.config import setup_logging, get_settings
from ctxbench.errors import CtxBenchError, RecoveryError
from ctxbench.clients.ollama import OllamaClient
from ctxbench.clients.cloud import is_cloud_spec, parse_judge_spec, create_provider
from ctxbench.core import (
    BenchmarkRunner,
    RunOptions,
    TagStatus,
    ResultsStore,
    LocalJudge,
    CloudJudge,
    PullManager,
)
from ctxbench.core.tags import split_tags, full_tag_name
from ctxbench.schemas.results import TestOptions
from ctxbench.schemas.suite import load_suite
from ctxbench.utils.cli import print_section, print_kv, format_duration

# Настраиваем логирование при старте
setup_logging()

logger = logging.getLogger("ctxbench.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


# =============================================================================
# Сборка зависимостей
# =============================================================================

def resolve_suite_path(value: str) -> Path:
    """Путь к набору: как есть, либо по имени в директории наборов"""
    path = Path(value)
    if path.exists():
        return path

    suites_dir = Path(get_settings().paths.suites_dir)
    for candidate in (suites_dir / value, suites_dir / f"{value}.json"):
        if candidate.exists():
            return candidate
    return path


def default_results_path(model_name: str, test_type: str) -> Path:
    """`<results_dir>/<модель>.<тип теста>.json`"""
    safe = model_name.replace("/", "_").replace(":", "_")
    return Path(get_settings().paths.results_dir) / f"{safe}.{test_type}.json"


def split_judge_argument(value: str):
    """'http://host:11434/qwen3:32b' -> ('http://host:11434', 'qwen3:32b')"""
    if value.startswith(("http://", "https://")):
        scheme, rest = value.split("://", 1)
        if "/" in rest:
            host, model = rest.split("/", 1)
            return f"{scheme}://{host}", model
    return None, value


def build_judge(args):
    """
    Создать судью из аргументов

    Returns:
        LocalJudge, CloudJudge или None

    Raises:
        ValueError: Неверный аргумент облачного судьи или нет ключа
    """
    if not args.judge:
        return None

    settings = get_settings()

    if is_cloud_spec(args.judge):
        config = parse_judge_spec(args.judge)
        if config is None:
            raise ValueError(f"Invalid cloud judge: {args.judge}. Expected @provider[:key]/model")
        provider = create_provider(config, timeout=settings.judge.cloud_timeout)
        ok, error = provider.validate_connection()
        if not ok:
            raise ValueError(f"Cloud judge {config.display_name}: {error}")
        print_kv("Судья", f"{config.display_name} (подключение проверено)")
        return CloudJudge(provider, max_tokens=settings.judge.cloud_max_tokens)

    url, model = split_judge_argument(args.judge)
    url = url or getattr(args, "judge_url", None) or settings.get_judge_url()
    client = OllamaClient.from_settings(settings, base_url=url, timeout=args.timeout)
    ctx_size = getattr(args, "judge_ctx", None)
    return LocalJudge(
        client,
        model,
        ctx_size=settings.judge.ctx_size if ctx_size is None else ctx_size,
        num_predict=settings.judge.num_predict,
    )


def build_test_options(args) -> TestOptions:
    return TestOptions(
        temperature=args.temperature,
        seed=args.seed,
        top_p=args.top_p,
        top_k=args.top_k,
        repeat_penalty=args.repeat_penalty,
        frequency_penalty=args.frequency_penalty,
        timeout=args.timeout or get_settings().bench.timeout,
        enable_thinking=args.enable_thinking,
        think_level=args.think_level,
    )


def install_cancel_handler(runner: BenchmarkRunner) -> None:
    """Ctrl+C просит оркестратор остановиться и сохранить результаты"""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, runner.request_cancel)
    except NotImplementedError:
        # Windows: остаётся KeyboardInterrupt
        logger.debug("add_signal_handler недоступен")


# =============================================================================
# Команды
# =============================================================================

async def cmd_run(args) -> int:
    """Прогнать теги модели по тестовому набору"""
    settings = get_settings()
    suite_path = resolve_suite_path(args.suite)
    suite, digest = load_suite(suite_path)

    if suite.judge_required and not args.judge:
        logger.warning("Набор рассчитан на судью, ответы будут оцениваться по вхождению эталона")

    output = Path(args.output) if args.output else default_results_path(args.model, suite.test_type)
    judge = build_judge(args)

    options = RunOptions(
        model_name=args.model,
        suite_name=suite_path.stem,
        test_options=build_test_options(args),
        category_limit=args.limit,
        base_tag=full_tag_name(args.model, args.base) if args.base else None,
        force=args.force,
        rejudge=args.rejudge,
        parallel_judge=(args.mode or settings.judge.mode) == "parallel",
        calibrate=args.calibrate,
        on_demand=args.ondemand,
        calibration_dir=args.calibrate_output,
    )

    runner = BenchmarkRunner(suite, digest, ResultsStore(output), options, judge=judge, settings=settings)
    install_cancel_handler(runner)

    print_section(f"ctxbench {__version__}")
    print_kv("Модель", args.model)
    print_kv("Набор", f"{suite_path} ({suite.test_type})")
    print_kv("Результаты", str(output))

    started = time.monotonic()
    outcomes = await runner.run(split_tags(args.quants))

    print_section("Итоги")
    for outcome in outcomes:
        print_kv(outcome.tag, outcome.describe())
    print_kv("Время", format_duration(time.monotonic() - started))

    if runner.cancelled:
        return EXIT_INTERRUPTED
    if outcomes and all(o.status == TagStatus.FATAL for o in outcomes):
        return EXIT_ERROR
    return EXIT_OK


async def cmd_judge(args) -> int:
    """Оценить ответы в существующем файле результатов"""
    suite, digest = load_suite(resolve_suite_path(args.suite))
    judge = build_judge(args)
    if judge is None:
        print("Ошибка: укажите судью (--judge)")
        return EXIT_ERROR

    store = ResultsStore(args.file)
    if not store.exists():
        print(f"Ошибка: файл не найден: {store.path}")
        return EXIT_ERROR

    options = RunOptions(model_name="", rejudge=args.rejudge, force=args.force)
    runner = BenchmarkRunner(suite, digest, store, options, judge=judge)
    install_cancel_handler(runner)

    tags = split_tags(args.quants) or None
    judged = await runner.judge_existing(tags)
    print_section("Оценка завершена")
    print_kv("Оценено ответов", str(judged))
    return EXIT_INTERRUPTED if runner.cancelled else EXIT_OK


def cmd_score(args) -> int:
    """Оценить теги относительно базового"""
    from ctxbench.scoring import score_results, print_scoring_table, generate_report, summarize_results

    results = ResultsStore(args.file).load()
    base = full_tag_name(results.model_name, args.base) if args.base else None
    report = score_results(results, base)
    print_scoring_table(report)

    if args.save:
        reports_dir = args.output or get_settings().paths.reports_dir
        paths = generate_report(summarize_results(results), reports_dir, ["json", "md"], scoring=report)
        for fmt, path in paths.items():
            print_kv(fmt.upper(), str(path))
    return EXIT_OK


def cmd_view(args) -> int:
    """Показать результаты: таблицы, отчёты и графики"""
    from ctxbench.scoring import (
        summarize_results,
        score_results,
        print_summary_table,
        print_category_table,
        print_performance_table,
        generate_report,
        generate_charts,
        check_matplotlib_available,
    )

    results = ResultsStore(args.file).load()
    summary = summarize_results(results)
    reports_dir = args.output or get_settings().paths.reports_dir

    scoring = None
    if results.base_result() is not None:
        try:
            scoring = score_results(results)
        except ValueError as e:
            logger.warning(f"Сравнение с базой недоступно: {e}")

    if args.format == "table":
        print_summary_table(summary)
        print_category_table(summary)
        print_performance_table(summary)
    else:
        formats = ["json", "md", "html"] if args.format == "all" else [args.format]
        paths = generate_report(summary, reports_dir, formats, scoring=scoring)
        print_section("Отчёты")
        for fmt, path in paths.items():
            print_kv(fmt.upper(), str(path))

    if args.charts:
        if not check_matplotlib_available():
            print("Ошибка: matplotlib не установлен. Установите: pip install matplotlib")
            return EXIT_ERROR
        charts = generate_charts(summary, str(Path(reports_dir) / "charts"), args.chart_format, scoring=scoring)
        print_section("Графики")
        for name, paths in charts.items():
            print_kv(name, ", ".join(str(p) for p in paths))
    return EXIT_OK


def cmd_fix(args) -> int:
    """Исправить повреждённый файл результатов"""
    outcome = ResultsStore(args.file).repair()

    print_section("Исправление файла результатов")
    if not outcome.success:
        print(f"  Ошибка: {outcome.message}")
        if outcome.partial_path:
            print_kv("Частичный текст", str(outcome.partial_path))
        return EXIT_ERROR

    if outcome.output_path is None:
        print(f"  {outcome.message}")
        return EXIT_OK

    if outcome.recovery is not None:
        print_kv("Закрыто массивов", str(outcome.recovery.closed_arrays))
        print_kv("Закрыто объектов", str(outcome.recovery.closed_objects))
        print_kv("Отброшено байт", str(outcome.recovery.removed_bytes))
    print_kv("Исправлений", str(outcome.fixes_applied))
    print_kv("Сохранено", str(outcome.output_path))
    return EXIT_OK


def cmd_restore(args) -> int:
    """Восстановить файл результатов из резервной копии"""
    store = ResultsStore(args.file)
    try:
        size = store.restore_backup()
    except FileNotFoundError:
        print(f"Ошибка: резервная копия не найдена: {store.backup_path}")
        return EXIT_ERROR

    print_section("Восстановлено")
    print_kv("Файл", str(store.path))
    print_kv("Размер", f"{size:,} байт")
    return EXIT_OK


def cmd_pull(args) -> int:
    """Загрузить модель с повторами"""
    settings = get_settings()
    client = OllamaClient.from_settings(settings)

    last_status = {"value": None}

    def on_progress(message):
        status = message.get("status")
        if status and status != last_status["value"]:
            last_status["value"] = status
            print(f"  {status}")

    manager = PullManager.from_settings(client, settings, on_progress=on_progress)
    result = manager.pull(args.model)

    if result.success:
        print_kv("Загружено", result.model)
        print_kv("Повторов", str(result.retries))
        return EXIT_OK

    print(f"Ошибка загрузки {result.model}: {result.error}")
    return EXIT_ERROR


def cmd_info(args) -> int:
    """Показать состояние сервера"""
    settings = get_settings()
    client = OllamaClient.from_settings(settings)

    print_section("Сервер")
    print_kv("URL", client.base_url)
    print_kv("Версия", client.version() or "недоступен")
    print_kv("Судья по умолчанию", settings.get_judge_url())

    running = client.list_running()
    print_section("Загруженные модели")
    if not running:
        print("  Нет загруженных моделей")
    for entry in running:
        name = entry.get("name") or entry.get("model") or "?"
        size_gb = (entry.get("size_vram") or entry.get("size") or 0) / 1024 ** 3
        print(f"  {name:<50} {size_gb:.1f} GB")

    if args.models:
        print_section("Локальные модели")
        for entry in client.list_models():
            name = entry.get("name") or entry.get("model") or "?"
            size_gb = (entry.get("size") or 0) / 1024 ** 3
            print(f"  {name:<50} {size_gb:.1f} GB")
    print()
    return EXIT_OK


# =============================================================================
# Аргументы
# =============================================================================

def add_judge_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--judge",
                        help="Судья: модель, http://host:port/модель или @provider[:key]/модель")
    parser.add_argument("--judge-url",
                        help="URL сервера для локального судьи")
    parser.add_argument("--judge-ctx", type=int,
                        help="Контекст судьи (0 = авто)")
    parser.add_argument("--timeout", type=int, default=None,
                        help="Таймаут запросов в секундах (по умолчанию из настроек)")
    parser.add_argument("--rejudge", action="store_true",
                        help="Переоценить уже оценённые ответы")
    parser.add_argument("--force", action="store_true",
                        help="Перезапустить теги, уже есть в файле результатов")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ctxbench — тест длинного контекста для квантизаций моделей",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Примеры:
  %(prog)s run -m qwen3 -q "q4*,fp16" -s ctxbench --judge qwen3:32b
  %(prog)s score results/qwen3.ctxbench.json --base fp16
  %(prog)s view results/qwen3.ctxbench.json --format html --charts
  %(prog)s fix results/qwen3.ctxbench.json
  %(prog)s info --models
        """
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Подробный лог в консоли (DEBUG)")
    parser.add_argument("--log-file",
                        help="Отдельный файл логов для этого запуска")
    subparsers = parser.add_subparsers(dest="command", help="Команды")

    # run command
    run_parser = subparsers.add_parser("run", help="Прогнать теги модели по набору")
    run_parser.add_argument("-m", "--model", required=True,
                            help="Имя модели (репозиторий)")
    run_parser.add_argument("-q", "--quants", required=True,
                            help="Теги через запятую, поддерживаются * и ?")
    run_parser.add_argument("-s", "--suite", required=True,
                            help="Файл тестового набора или его имя в директории наборов")
    run_parser.add_argument("-o", "--output",
                            help="Файл результатов (по умолчанию <модель>.<тип>.json)")
    run_parser.add_argument("-L", "--limit",
                            help="Последняя категория для теста (например, 32k)")
    run_parser.add_argument("--base",
                            help="Базовый тег для сравнения")
    run_parser.add_argument("--mode", choices=["serial", "parallel"],
                            help="Режим судьи (по умолчанию из настроек)")
    run_parser.add_argument("--ondemand", action="store_true",
                            help="Загружать отсутствующие модели и удалять после теста")
    run_parser.add_argument("--calibrate", action="store_true",
                            help="Записывать калибровку оценки токенов")
    run_parser.add_argument("--calibrate-output",
                            help="Директория для файлов калибровки")
    run_parser.add_argument("--seed", type=int, default=365)
    run_parser.add_argument("--temperature", type=float)
    run_parser.add_argument("--top-p", type=float)
    run_parser.add_argument("--top-k", type=int)
    run_parser.add_argument("--repeat-penalty", type=float)
    run_parser.add_argument("--frequency-penalty", type=float)
    run_parser.add_argument("--enable-thinking", action="store_true",
                            help="Включить рассуждения модели")
    run_parser.add_argument("--think-level", choices=["low", "medium", "high"],
                            help="Уровень рассуждений (перекрывает --enable-thinking)")
    add_judge_arguments(run_parser)

    # judge command
    judge_parser = subparsers.add_parser("judge", help="Оценить сохранённые ответы")
    judge_parser.add_argument("file", help="Файл результатов")
    judge_parser.add_argument("-s", "--suite", required=True,
                              help="Тестовый набор, по которому получены результаты")
    judge_parser.add_argument("-q", "--quants",
                              help="Только эти теги (полные имена через запятую)")
    add_judge_arguments(judge_parser)

    # score command
    score_parser = subparsers.add_parser("score", help="Сравнить теги с базовым")
    score_parser.add_argument("file", help="Файл результатов")
    score_parser.add_argument("--base", help="Базовый тег (по умолчанию отмеченный в файле)")
    score_parser.add_argument("--save", action="store_true", help="Сохранить отчёт JSON и Markdown")
    score_parser.add_argument("-o", "--output", help="Директория отчётов")

    # view command
    view_parser = subparsers.add_parser("view", help="Показать результаты")
    view_parser.add_argument("file", help="Файл результатов")
    view_parser.add_argument("--format", choices=["table", "json", "md", "html", "all"],
                             default="table", help="Формат вывода (по умолчанию: table)")
    view_parser.add_argument("-o", "--output", help="Директория отчётов")
    view_parser.add_argument("--charts", action="store_true", help="Построить графики")
    view_parser.add_argument("--chart-format", nargs="+", choices=["png", "svg", "pdf"],
                             default=["png"], help="Форматы графиков")

    # fix command
    fix_parser = subparsers.add_parser("fix", help="Исправить повреждённый файл результатов")
    fix_parser.add_argument("file", help="Файл результатов")

    # restore command
    restore_parser = subparsers.add_parser("restore", help="Восстановить из резервной копии")
    restore_parser.add_argument("file", help="Файл результатов")

    # pull command
    pull_parser = subparsers.add_parser("pull", help="Загрузить модель с повторами")
    pull_parser.add_argument("model", help="Полное имя модели")

    # info command
    info_parser = subparsers.add_parser("info", help="Показать состояние сервера")
    info_parser.add_argument("--models", action="store_true", help="Список локальных моделей")

    return parser


def dispatch(args) -> int:
    if args.command == "run":
        return asyncio.run(cmd_run(args))
    if args.command == "judge":
        return asyncio.run(cmd_judge(args))
    if args.command == "score":
        return cmd_score(args)
    if args.command == "view":
        return cmd_view(args)
    if args.command == "fix":
        return cmd_fix(args)
    if args.command == "restore":
        return cmd_restore(args)
    if args.command == "pull":
        return cmd_pull(args)
    if args.command == "info":
        return cmd_info(args)
    return EXIT_ERROR


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_OK

    if args.verbose or args.log_file:
        setup_logging(log_file=args.log_file, verbose=args.verbose)

    try:
        return dispatch(args)
    except KeyboardInterrupt:
        print("\n  Прервано")
        return EXIT_INTERRUPTED
    except RecoveryError as e:
        print(f"Ошибка: {e}")
        if e.partial_path:
            print_kv("Частичный текст", e.partial_path)
        return EXIT_ERROR
    except (CtxBenchError, ValueError, FileNotFoundError) as e:
        logger.error(str(e))
        print(f"Ошибка: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
