"""
Statistics — сводная статистика по файлу результатов

Отвечает за:
- Общий балл тега (среднее категорий с весом log2 контекста)
- Рейтинг по баллу (Excellent ... Very Poor)
- Агрегацию по тегам и категориям (сводка для отчётов)
- Базовые статистики: среднее, медиана, стандартное отклонение, 95% ДИ
"""

import logging
import math
from typing import List, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..schemas.results import CategoryResult, QuantResult, ResultsFile


logger = logging.getLogger(__name__)


def calculate_mean(values: List[float]) -> float:
    """Среднее арифметическое"""
    if not values:
        return 0.0
    return sum(values) / len(values)


def calculate_median(values: List[float]) -> float:
    """Медиана"""
    if not values:
        return 0.0
    sorted_vals = sorted(values)
    n = len(sorted_vals)
    mid = n // 2
    if n % 2 == 0:
        return (sorted_vals[mid - 1] + sorted_vals[mid]) / 2
    return sorted_vals[mid]


def calculate_std(values: List[float], mean: Optional[float] = None) -> float:
    """Стандартное отклонение (несмещённая оценка)"""
    if len(values) < 2:
        return 0.0
    if mean is None:
        mean = calculate_mean(values)
    variance = sum((x - mean) ** 2 for x in values) / (len(values) - 1)
    return math.sqrt(variance)


def calculate_ci_95(values: List[float]) -> Tuple[float, float]:
    """
    Расчёт 95% доверительного интервала

    Использует t-распределение для малых выборок
    """
    n = len(values)
    if n < 2:
        mean = calculate_mean(values)
        return (mean, mean)

    mean = calculate_mean(values)
    std = calculate_std(values, mean)

    t_critical = {
        2: 12.706, 3: 4.303, 4: 3.182, 5: 2.776, 6: 2.571,
        7: 2.447, 8: 2.365, 9: 2.306, 10: 2.262, 15: 2.145,
        20: 2.093, 25: 2.064, 30: 2.045, 50: 2.009, 100: 1.984
    }

    t = 1.96  # По умолчанию для больших выборок
    for k in sorted(t_critical.keys()):
        if n <= k:
            t = t_critical[k]
            break

    margin = t * (std / math.sqrt(n))

    return (mean - margin, mean + margin)


# =============================================================================
# Баллы и рейтинги
# =============================================================================

def calculate_overall_score(result: QuantResult) -> float:
    """Общий балл тега: среднее оценок категорий с весом log2(контекст)"""
    return result.computed_overall_score()


def score_rating(score: float) -> str:
    """Словесный рейтинг балла"""
    if score >= 95:
        return "Excellent"
    if score >= 85:
        return "Very Good"
    if score >= 75:
        return "Good"
    if score >= 60:
        return "Fair"
    if score >= 40:
        return "Poor"
    return "Very Poor"


def score_color(score: float) -> str:
    """Цвет rich для балла"""
    if score >= 95:
        return "green"
    if score >= 85:
        return "bright_green"
    if score >= 75:
        return "yellow"
    if score >= 60:
        return "orange1"
    return "red"


def rank(score: float, all_scores: List[float]) -> int:
    """Место балла среди всех (1 — лучший)"""
    return sum(1 for s in all_scores if s > score) + 1


def delta(current: float, baseline: float) -> float:
    return current - baseline


def format_size(size_bytes: int) -> str:
    """Размер на диске: GB / MB / KB"""
    gb = 1024 ** 3
    mb = 1024 ** 2
    if size_bytes >= gb:
        return f"{size_bytes / gb:.2f} GB"
    if size_bytes >= mb:
        return f"{size_bytes / mb:.1f} MB"
    return f"{size_bytes / 1024:.0f} KB"


def format_speed(speed: float) -> str:
    """Скорость в ток/с: 1.2k для больших значений"""
    if speed >= 1000:
        return f"{speed / 1000:.1f}k"
    return f"{speed:.0f}"


def format_response_time(ms: float) -> str:
    """Время ответа: 12.3s или 2:05s"""
    seconds = ms / 1000.0
    if seconds >= 60:
        minutes = int(seconds // 60)
        return f"{minutes}:{seconds % 60:.0f}s"
    return f"{seconds:.1f}s"


# =============================================================================
# Сводка по файлу результатов
# =============================================================================

class CategoryStats(BaseModel):
    """Статистика категории по всем тегам"""
    category: str
    scores: List[float] = Field(default_factory=list)
    average: float = 0.0
    min: float = 0.0
    max: float = 0.0
    std_dev: float = 0.0


class TagSummary(BaseModel):
    """Сводка по одному тегу"""
    model_config = ConfigDict(protected_namespaces=())

    tag: str
    model_name: str = ""
    repository_url: Optional[str] = None
    disk_size_bytes: int = 0
    parameter_size: str = ""
    quantization_type: str = ""
    overall_score: float = 0.0
    total_questions: int = 0
    correct_answers: int = 0
    is_complete: bool = False
    category_scores: Dict[str, float] = Field(default_factory=dict)
    sub_category_scores: Dict[str, float] = Field(default_factory=dict)
    context_tokens_used: Dict[str, int] = Field(default_factory=dict)
    min_prompt_toks_per_sec: Dict[str, float] = Field(default_factory=dict)
    min_eval_toks_per_sec: Dict[str, float] = Field(default_factory=dict)
    avg_response_time_ms: Dict[str, float] = Field(default_factory=dict)

    @property
    def rating(self) -> str:
        return score_rating(self.overall_score)


class ResultsSummary(BaseModel):
    """Сводка по файлу результатов, теги по убыванию балла"""
    model_config = ConfigDict(protected_namespaces=())

    test_suite_name: str = ""
    test_type: str = ""
    model_name: str = ""
    judge_model: Optional[str] = None
    judge_provider: Optional[str] = None
    max_context_length: int = 0
    category_limit: Optional[str] = None
    total_tags: int = 0
    categories: List[str] = Field(default_factory=list)
    tags: List[TagSummary] = Field(default_factory=list)


def _summarize_category(summary: TagSummary, category: CategoryResult) -> None:
    summary.category_scores[category.category] = category.score

    used = category.peak_context_tokens or category.context_tokens_used
    if used:
        summary.context_tokens_used[category.category] = used

    questions = category.all_questions()
    prompt_speeds = [q.prompt_toks_per_sec for q in questions if q.prompt_toks_per_sec and q.prompt_toks_per_sec > 0]
    eval_speeds = [q.eval_toks_per_sec for q in questions if q.eval_toks_per_sec and q.eval_toks_per_sec > 0]
    if prompt_speeds:
        summary.min_prompt_toks_per_sec[category.category] = min(prompt_speeds)
    if eval_speeds:
        summary.min_eval_toks_per_sec[category.category] = min(eval_speeds)

    if category.avg_response_time_ms is not None:
        summary.avg_response_time_ms[category.category] = category.avg_response_time_ms

    for sub in category.sub_category_results or []:
        summary.sub_category_scores[f"{category.category}/{sub.sub_category}"] = sub.score


def summarize_results(results: ResultsFile) -> ResultsSummary:
    """Сводка по всем тегам файла результатов"""
    categories: List[str] = []
    for result in results.results:
        for category in result.category_results:
            if category.category not in categories:
                categories.append(category.category)

    summary = ResultsSummary(
        test_suite_name=results.test_suite_name,
        test_type=results.test_type,
        model_name=results.model_name,
        judge_model=results.judge_model,
        judge_provider=results.judge_provider,
        max_context_length=results.max_context_length,
        category_limit=results.category_limit,
        total_tags=len(results.results),
        categories=categories,
    )

    for result in results.results:
        tag_summary = TagSummary(
            tag=result.tag,
            model_name=result.model_name,
            repository_url=result.repository_url,
            disk_size_bytes=result.disk_size_bytes,
            parameter_size=result.parameter_size,
            quantization_type=result.quantization_type,
            overall_score=result.overall_score,
            total_questions=result.total_questions,
            correct_answers=result.correct_answers,
            is_complete=result.is_complete,
        )
        for category in result.category_results:
            _summarize_category(tag_summary, category)
        summary.tags.append(tag_summary)

    summary.tags.sort(key=lambda t: t.overall_score, reverse=True)
    logger.debug(f"Сводка: тегов={summary.total_tags}, категорий={len(categories)}")
    return summary


def category_statistics(summary: ResultsSummary) -> Dict[str, CategoryStats]:
    """Среднее, минимум, максимум и разброс оценок каждой категории по тегам"""
    stats: Dict[str, CategoryStats] = {}
    for tag in summary.tags:
        for name, score in tag.category_scores.items():
            stats.setdefault(name, CategoryStats(category=name)).scores.append(score)

    for stat in stats.values():
        if stat.scores:
            stat.average = calculate_mean(stat.scores)
            stat.min = min(stat.scores)
            stat.max = max(stat.scores)
            stat.std_dev = calculate_std(stat.scores, stat.average)
    return stats
