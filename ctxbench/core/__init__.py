"""
Core — ядро бенчмарка

Основные компоненты:
- BenchmarkRunner: Оркестратор прогона тегов
- ResultsStore: Файл результатов (бэкап, восстановление, ремонт)
- JudgmentService / ParallelJudgmentQueue: Оценка ответов судьёй
- PullManager: Загрузка моделей с повторами
- ContextTracker, CalibrationRecorder: Учёт контекста и калибровка
"""

from .context_tracker import ContextTracker
from .calibration import CalibrationRecorder
from .results_store import ResultsStore, recover_json, cleanup_results
from .judgment import (
    JudgmentService,
    LocalJudge,
    CloudJudge,
    ParallelJudgmentQueue,
    judge_tag_serial,
)
from .pull import PullManager, PullPhase, PullResult
from .orchestrator import BenchmarkRunner, RunOptions, TagOutcome, TagStatus

__all__ = [
    # Оркестратор
    "BenchmarkRunner",
    "RunOptions",
    "TagOutcome",
    "TagStatus",
    # Результаты
    "ResultsStore",
    "recover_json",
    "cleanup_results",
    # Судья
    "JudgmentService",
    "LocalJudge",
    "CloudJudge",
    "ParallelJudgmentQueue",
    "judge_tag_serial",
    # Загрузка моделей
    "PullManager",
    "PullPhase",
    "PullResult",
    # Учёт контекста
    "ContextTracker",
    "CalibrationRecorder",
]
