"""
Scoring Engine — сравнение тегов с базовым по log-вероятностям токенов

Чистые функции без ввода-вывода. Запускается один раз по готовому файлу
результатов, не во время тестирования.

Оценка вопроса (0-100) — взвешенная сумма четырёх метрик:
- сходство последовательностей токенов (LCS), 5%
- расхождение уверенности по log-вероятностям, 70%
- согласованность длины ответа, 5%
- перплексия, 20%

Если у всех вопросов тега есть вердикт судьи, итог тега —
50% метрик + 50% средней оценки судьи.
"""

import math
from typing import Optional, List, Dict, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..schemas.results import (
    QuestionResult,
    QuantResult,
    ResultsFile,
    TokenLogprob,
)


TOKEN_SIMILARITY_WEIGHT = 0.05
LOGPROBS_DIVERGENCE_WEIGHT = 0.70
LENGTH_CONSISTENCY_WEIGHT = 0.05
PERPLEXITY_WEIGHT = 0.20

METRICS_WEIGHT = 0.5
JUDGMENT_WEIGHT = 0.5


# =============================================================================
# Модели оценок
# =============================================================================

class QuestionScore(BaseModel):
    """Оценка одного вопроса относительно базового тега"""
    question_key: str
    category: str
    token_similarity_score: float = 0.0
    logprobs_divergence_score: float = 0.0
    length_consistency_score: float = 0.0
    perplexity_score: float = 0.0
    overall_confidence_score: float = 0.0
    judgment_score: Optional[float] = None


class TagScore(BaseModel):
    """Оценка тега относительно базового"""
    tag: str
    disk_size_bytes: int = 0
    quantization_type: str = ""
    question_scores: List[QuestionScore] = Field(default_factory=list)
    category_scores: Dict[str, float] = Field(default_factory=dict)
    category_judgment_scores: Dict[str, float] = Field(default_factory=dict)
    total_confidence_score: float = 0.0
    average_judgment_score: Optional[float] = None
    has_judgment_scoring: bool = False
    final_score: float = 0.0
    eval_tokens_per_second: float = 0.0
    prompt_tokens_per_second: float = 0.0
    eval_performance_percent: Optional[float] = None
    prompt_performance_percent: Optional[float] = None


class ScoringReport(BaseModel):
    """Оценки всех тегов файла результатов"""
    model_config = ConfigDict(protected_namespaces=())

    model_name: str = ""
    base_tag: str
    base_eval_tokens_per_second: float = 0.0
    base_prompt_tokens_per_second: float = 0.0
    tag_scores: List[TagScore] = Field(default_factory=list)


# =============================================================================
# Метрики
# =============================================================================

def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def lcs_length(seq1: Sequence[str], seq2: Sequence[str]) -> int:
    """
    Длина наибольшей общей подпоследовательности

    Динамическое программирование с двумя строками таблицы.
    """
    if not seq1 or not seq2:
        return 0

    previous = [0] * (len(seq2) + 1)
    for item1 in seq1:
        current = [0] * (len(seq2) + 1)
        for j, item2 in enumerate(seq2, start=1):
            if item1 == item2:
                current[j] = previous[j - 1] + 1
            else:
                current[j] = max(previous[j], current[j - 1])
        previous = current
    return previous[-1]


def mean_logprob(tokens: Sequence[TokenLogprob]) -> float:
    return sum(t.logprob for t in tokens) / len(tokens)


def perplexity(tokens: Sequence[TokenLogprob]) -> float:
    """exp(-среднее log-вероятности); 0 для пустой последовательности"""
    if not tokens:
        return 0.0
    return math.exp(-mean_logprob(tokens))


def token_similarity(base: QuestionResult, candidate: QuestionResult) -> float:
    """LCS / средняя длина последовательностей, в процентах, не больше 100"""
    if not base.tokens or not candidate.tokens:
        return 0.0

    lcs = lcs_length([t.token for t in base.tokens], [t.token for t in candidate.tokens])
    avg_length = (len(base.tokens) + len(candidate.tokens)) / 2.0
    return min(100.0, lcs / avg_length * 100.0)


def logprobs_divergence(base: QuestionResult, candidate: QuestionResult) -> float:
    """100 * exp(-2 * |exp(mean_base) - exp(mean_candidate)|)"""
    if not base.tokens or not candidate.tokens:
        return 0.0

    base_confidence = math.exp(mean_logprob(base.tokens))
    candidate_confidence = math.exp(mean_logprob(candidate.tokens))
    return _clamp(100.0 * math.exp(-abs(base_confidence - candidate_confidence) * 2.0))


def _total_tokens(question: QuestionResult) -> int:
    if question.completion_tokens:
        return question.completion_tokens
    return len(question.tokens)


def length_consistency(base: QuestionResult, candidate: QuestionResult) -> float:
    """100 * exp(-2 * |1 - candidate_tokens / base_tokens|)"""
    base_total = _total_tokens(base)
    if base_total == 0:
        return 0.0

    ratio = _total_tokens(candidate) / base_total
    return _clamp(100.0 * math.exp(-abs(1.0 - ratio) * 2.0))


def perplexity_score(base: QuestionResult, candidate: QuestionResult) -> float:
    """100 * exp(-0.5 * |1 - ppl_candidate / ppl_base|)"""
    if not base.tokens or not candidate.tokens:
        return 0.0

    base_ppl = perplexity(base.tokens)
    if base_ppl == 0:
        return 0.0

    ratio = perplexity(candidate.tokens) / base_ppl
    return _clamp(100.0 * math.exp(-abs(1.0 - ratio) * 0.5))


# =============================================================================
# Агрегация
# =============================================================================

def score_question(
    base: QuestionResult,
    candidate: QuestionResult,
    category: str = "",
    question_key: str = "",
) -> QuestionScore:
    """Оценить вопрос кандидата относительно того же вопроса базового тега"""
    score = QuestionScore(
        question_key=question_key or str(base.question_id),
        category=category,
        token_similarity_score=token_similarity(base, candidate),
        logprobs_divergence_score=logprobs_divergence(base, candidate),
        length_consistency_score=length_consistency(base, candidate),
        perplexity_score=perplexity_score(base, candidate),
    )
    score.overall_confidence_score = (
        score.token_similarity_score * TOKEN_SIMILARITY_WEIGHT
        + score.logprobs_divergence_score * LOGPROBS_DIVERGENCE_WEIGHT
        + score.length_consistency_score * LENGTH_CONSISTENCY_WEIGHT
        + score.perplexity_score * PERPLEXITY_WEIGHT
    )
    if candidate.judgment is not None:
        score.judgment_score = candidate.score
    return score


def _keyed_questions(result: QuantResult) -> Dict[str, Tuple[str, QuestionResult]]:
    """Вопросы тега по ключу категория/подкатегория/id"""
    keyed: Dict[str, Tuple[str, QuestionResult]] = {}
    for category in result.category_results:
        if category.sub_category_results:
            for sub in category.sub_category_results:
                for question in sub.question_results:
                    keyed[f"{category.category}/{sub.sub_category}/{question.question_id}"] = (
                        category.category, question
                    )
        else:
            for question in category.question_results or []:
                keyed[f"{category.category}/{question.question_id}"] = (category.category, question)
    return keyed


def average_speeds(result: QuantResult) -> Tuple[float, float]:
    """Средние eval и prompt ток/с по вопросам с ненулевой скоростью"""
    questions = result.all_questions()
    eval_speeds = [q.eval_toks_per_sec for q in questions if q.eval_toks_per_sec and q.eval_toks_per_sec > 0]
    prompt_speeds = [q.prompt_toks_per_sec for q in questions if q.prompt_toks_per_sec and q.prompt_toks_per_sec > 0]
    eval_avg = sum(eval_speeds) / len(eval_speeds) if eval_speeds else 0.0
    prompt_avg = sum(prompt_speeds) / len(prompt_speeds) if prompt_speeds else 0.0
    return eval_avg, prompt_avg


def score_tag(base: QuantResult, candidate: QuantResult) -> TagScore:
    """
    Оценить тег относительно базового

    Вопросы сопоставляются по ключу; вопросы без пары пропускаются.
    """
    tag_score = TagScore(
        tag=candidate.tag,
        disk_size_bytes=candidate.disk_size_bytes,
        quantization_type=candidate.quantization_type,
    )

    candidate_questions = _keyed_questions(candidate)
    by_category: Dict[str, List[float]] = {}
    judgment_by_category: Dict[str, List[float]] = {}
    judgments: List[float] = []

    for key, (category, base_question) in _keyed_questions(base).items():
        pair = candidate_questions.get(key)
        if pair is None:
            continue

        question_score = score_question(base_question, pair[1], category=category, question_key=key)
        tag_score.question_scores.append(question_score)
        by_category.setdefault(category, []).append(question_score.overall_confidence_score)

        if question_score.judgment_score is not None:
            judgments.append(question_score.judgment_score)
            judgment_by_category.setdefault(category, []).append(question_score.judgment_score)

    tag_score.category_scores = {k: sum(v) / len(v) for k, v in by_category.items()}
    tag_score.category_judgment_scores = {k: sum(v) / len(v) for k, v in judgment_by_category.items()}

    count = len(tag_score.question_scores)
    if count:
        tag_score.total_confidence_score = (
            sum(q.overall_confidence_score for q in tag_score.question_scores) / count
        )

    if count > 0 and len(judgments) == count:
        tag_score.has_judgment_scoring = True
        tag_score.average_judgment_score = sum(judgments) / len(judgments)
        tag_score.final_score = (
            tag_score.total_confidence_score * METRICS_WEIGHT
            + tag_score.average_judgment_score * JUDGMENT_WEIGHT
        )
    else:
        tag_score.final_score = tag_score.total_confidence_score

    base_eval, base_prompt = average_speeds(base)
    tag_score.eval_tokens_per_second, tag_score.prompt_tokens_per_second = average_speeds(candidate)
    if base_eval > 0:
        tag_score.eval_performance_percent = tag_score.eval_tokens_per_second / base_eval * 100.0
    if base_prompt > 0:
        tag_score.prompt_performance_percent = tag_score.prompt_tokens_per_second / base_prompt * 100.0

    return tag_score


def score_results(results: ResultsFile, base_tag: Optional[str] = None) -> ScoringReport:
    """
    Оценить все теги файла результатов относительно базового

    Args:
        results: Файл результатов
        base_tag: Базовый тег (если None — тег с флагом is_base)

    Raises:
        ValueError: Если базовый тег не найден
    """
    base = results.get_tag(base_tag) if base_tag else results.base_result()
    if base is None:
        raise ValueError(
            f"Base tag not found: {base_tag}" if base_tag else "No base result in results file"
        )

    base_eval, base_prompt = average_speeds(base)
    report = ScoringReport(
        model_name=results.model_name,
        base_tag=base.tag,
        base_eval_tokens_per_second=base_eval,
        base_prompt_tokens_per_second=base_prompt,
    )
    for result in results.results:
        if result.tag == base.tag:
            continue
        report.tag_scores.append(score_tag(base, result))
    return report
