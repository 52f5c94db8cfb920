"""
Исключения ctxbench

Иерархия:
- CtxBenchError
  - SuiteValidationError: тестовый набор невалиден
  - IncompatibleResultsError: файл результатов от другого набора/модели
  - ContextResolutionError: не удалось подобрать предел контекста
  - RecoveryError: повреждённый JSON восстановить не удалось
  - TagAbortedError: внутри оркестратора, превращается в TagOutcome.fatal
  - RunCancelled: остановка по Ctrl+C

Наружу оркестратора фатальные ошибки тега не выходят: результат
прогона тега — вариант TagOutcome (см. core.orchestrator).
"""

from typing import Optional


class CtxBenchError(Exception):
    """Базовое исключение проекта"""


class SuiteValidationError(CtxBenchError, ValueError):
    """Тестовый набор не прошёл проверку"""


class IncompatibleResultsError(CtxBenchError):
    """
    Файл результатов несовместим с текущим запуском

    Разрешается только явным --force.
    """

    def __init__(self, message: str, field: str, expected: str, actual: Optional[str]):
        super().__init__(message)
        self.field = field
        self.expected = expected
        self.actual = actual


class ContextResolutionError(CtxBenchError):
    """Ни одна категория не помещается в контекст модели"""


class RecoveryError(CtxBenchError):
    """Повреждённый файл результатов не удалось восстановить"""

    def __init__(self, message: str, partial_path: Optional[str] = None):
        super().__init__(message)
        self.partial_path = partial_path


class TagAbortedError(CtxBenchError):
    """Тестирование тега прервано: сервер не отвечает после всех повторов"""


class RunCancelled(CtxBenchError):
    """Запуск остановлен пользователем"""
