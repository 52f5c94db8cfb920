# ctxbench
# Бенчмарк удержания длинного контекста для квантизаций локальных моделей

__version__ = "0.4.0"

from .schemas.suite import TestSuite, load_suite
from .schemas.results import ResultsFile, QuantResult, TestOptions
from .clients.ollama import OllamaClient
from .core.orchestrator import BenchmarkRunner, RunOptions, TagOutcome
from .core.results_store import ResultsStore
from .scoring.engine import score_results

__all__ = [
    "__version__",
    # Schemas
    "TestSuite",
    "load_suite",
    "ResultsFile",
    "QuantResult",
    "TestOptions",
    # Clients
    "OllamaClient",
    # Core
    "BenchmarkRunner",
    "RunOptions",
    "TagOutcome",
    "ResultsStore",
    # Scoring
    "score_results",
]
