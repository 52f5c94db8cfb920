"""
Scoring — оценка, статистика и отчёты

Предоставляет:
- Сравнение тегов с базовым (engine)
- Сводную статистику по файлу результатов (statistics)
- Таблицы rich и отчёты JSON/Markdown/HTML (report)
- Графики matplotlib (charts)
"""

from .engine import (
    QuestionScore,
    TagScore,
    ScoringReport,
    score_results,
    score_tag,
)
from .statistics import (
    ResultsSummary,
    TagSummary,
    CategoryStats,
    summarize_results,
    category_statistics,
    score_rating,
)
from .report import (
    ReportGenerator,
    generate_report,
    print_summary_table,
    print_category_table,
    print_performance_table,
    print_scoring_table,
)
from .charts import ChartGenerator, generate_charts, check_matplotlib_available

__all__ = [
    # Оценка относительно базы
    "QuestionScore",
    "TagScore",
    "ScoringReport",
    "score_results",
    "score_tag",
    # Статистика
    "ResultsSummary",
    "TagSummary",
    "CategoryStats",
    "summarize_results",
    "category_statistics",
    "score_rating",
    # Отчёты
    "ReportGenerator",
    "generate_report",
    "print_summary_table",
    "print_category_table",
    "print_performance_table",
    "print_scoring_table",
    # Графики
    "ChartGenerator",
    "generate_charts",
    "check_matplotlib_available",
]
