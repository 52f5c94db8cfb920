"""
Result Schemas - схемы для результатов бенчмарка

Отвечает за:
- Результат одного вопроса (QuestionResult) и вердикт судьи (Judgment)
- Результаты подкатегорий и категорий (SubCategoryResult, CategoryResult)
- Результат одного тега (QuantResult) с кэшем pre-flight проверок
- Файл результатов целиком (ResultsFile)

Оценки вопросов бинарные: 0 или 100. Оценки категорий пересчитываются
из оценок вопросов, общий балл тега — среднее категорий с весом
log2(размер контекста).
"""

import math
from datetime import datetime
from typing import Optional, List, Dict, Union, Any

from pydantic import BaseModel, ConfigDict, Field


CORRECT_SCORE = 100.0

OptionValue = Union[bool, int, float, str]


# =============================================================================
# Вопросы
# =============================================================================

class Judgment(BaseModel):
    """Вердикт судьи"""
    answer: str = ""
    reason: str = ""
    judged_at: datetime = Field(default_factory=datetime.now)
    raw_response: Optional[str] = None

    @property
    def is_correct(self) -> bool:
        return self.answer.strip().upper() == "YES"


class ToolUsage(BaseModel):
    """Использование инструмента при ответе на вопрос"""
    tool_name: str
    call_count: int = 0
    arguments_json: Optional[str] = None
    result: Optional[str] = None


class TokenLogprob(BaseModel):
    """Токен ответа с его log-вероятностью"""
    token: str
    logprob: float
    bytes: Optional[List[int]] = None


class QuestionResult(BaseModel):
    """
    Результат одного вопроса

    judgment остаётся None до оценки судьёй.
    """
    model_config = ConfigDict(protected_namespaces=())

    question_id: int
    question: str = ""
    reference_answer: str = ""
    model_answer: str = ""
    model_thinking: Optional[str] = None
    score: float = 0.0
    judgment: Optional[Judgment] = None
    tools_used: List[ToolUsage] = Field(default_factory=list)
    about_category: Optional[str] = None

    # Время и токены
    response_time_ms: int = 0
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    thinking_tokens: Optional[int] = None
    prompt_toks_per_sec: Optional[float] = None
    eval_toks_per_sec: Optional[float] = None
    total_duration_ms: Optional[int] = None
    load_duration_ms: Optional[int] = None
    context_tokens_used: Optional[int] = None

    # Log-вероятности токенов ответа (для сравнения с базовым тегом)
    tokens: List[TokenLogprob] = Field(default_factory=list)

    is_error: bool = False

    @property
    def is_correct(self) -> bool:
        return self.score >= CORRECT_SCORE

    @property
    def needs_judgment(self) -> bool:
        """Есть ответ без ошибки, но нет вердикта"""
        return bool(self.model_answer) and not self.is_error and self.judgment is None


def _score_of(questions: List[QuestionResult]) -> tuple:
    total = len(questions)
    correct = sum(1 for q in questions if q.is_correct)
    score = correct / total * 100.0 if total > 0 else 0.0
    return total, correct, score


class SubCategoryResult(BaseModel):
    """Результат подкатегории"""
    sub_category: str
    score: float = 0.0
    total_questions: int = 0
    correct_answers: int = 0
    question_results: List[QuestionResult] = Field(default_factory=list)

    def computed_score(self) -> float:
        return _score_of(self.question_results)[2]

    def recalculate(self) -> None:
        """Пересчитать счётчики и оценку из вопросов"""
        self.total_questions, self.correct_answers, self.score = _score_of(self.question_results)


class CategoryResult(BaseModel):
    """
    Результат категории контекста

    Вопросы хранятся либо плоским списком, либо по подкатегориям.
    Пиковые значения контекста копируются из ContextTracker.
    """
    category: str
    target_context_length: int = 0
    context_tokens_used: Optional[int] = None
    score: float = 0.0
    total_questions: int = 0
    correct_answers: int = 0
    question_results: Optional[List[QuestionResult]] = None
    sub_category_results: Optional[List[SubCategoryResult]] = None
    is_complete: bool = False

    avg_response_time_ms: Optional[float] = None
    avg_prompt_toks_per_sec: Optional[float] = None
    avg_eval_toks_per_sec: Optional[float] = None
    total_prompt_tokens: Optional[int] = None
    total_completion_tokens: Optional[int] = None
    total_thinking_tokens: Optional[int] = None
    peak_thinking_tokens: Optional[int] = None
    peak_context_tokens: Optional[int] = None
    context_usage_percent: Optional[float] = None
    context_overflowed: Optional[bool] = None

    def all_questions(self) -> List[QuestionResult]:
        """Все вопросы категории в исходном порядке"""
        if self.sub_category_results:
            return [q for sub in self.sub_category_results for q in sub.question_results]
        return list(self.question_results or [])

    def get_sub_category(self, name: str) -> Optional[SubCategoryResult]:
        for sub in self.sub_category_results or []:
            if sub.sub_category == name:
                return sub
        return None

    def computed_score(self) -> float:
        return _score_of(self.all_questions())[2]

    def recalculate(self) -> None:
        """Пересчитать оценки подкатегорий и категории"""
        for sub in self.sub_category_results or []:
            sub.recalculate()
        self.total_questions, self.correct_answers, self.score = _score_of(self.all_questions())

    def update_averages(self) -> None:
        """Средние скорости и суммарные токены по вопросам"""
        questions = self.all_questions()
        if not questions:
            return

        self.avg_response_time_ms = sum(q.response_time_ms for q in questions) / len(questions)
        self.total_prompt_tokens = sum(q.prompt_tokens or 0 for q in questions)
        self.total_completion_tokens = sum(q.completion_tokens or 0 for q in questions)

        prompt_speeds = [q.prompt_toks_per_sec for q in questions if q.prompt_toks_per_sec]
        eval_speeds = [q.eval_toks_per_sec for q in questions if q.eval_toks_per_sec]
        if prompt_speeds:
            self.avg_prompt_toks_per_sec = sum(prompt_speeds) / len(prompt_speeds)
        if eval_speeds:
            self.avg_eval_toks_per_sec = sum(eval_speeds) / len(eval_speeds)


# =============================================================================
# Теги
# =============================================================================

class PreflightCheckResult(BaseModel):
    """
    Кэш pre-flight проверок модели

    Действителен, пока совпадает дайджест модели.
    """
    model_config = ConfigDict(protected_namespaces=())

    model_digest: Optional[str] = None
    thinking_enabled: bool = False
    effective_overhead: int = 0
    model_max_context_length: int = 0
    effective_max_context: int = 0
    tools_preflight_passed: Optional[bool] = None
    checked_at: Optional[datetime] = None


class TestOptions(BaseModel):
    """
    Снимок параметров генерации

    Известные параметры — типизированные поля; прочие уходят в extra
    и передаются серверу как есть.
    """
    __test__ = False

    temperature: Optional[float] = None
    seed: int = 365
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    repeat_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    timeout: int = 1800
    enable_thinking: bool = False
    think_level: Optional[str] = None
    extra: Dict[str, OptionValue] = Field(default_factory=dict)

    def to_model_options(self) -> Dict[str, OptionValue]:
        """Параметры для поля options запроса (только заданные)"""
        options: Dict[str, OptionValue] = {"seed": self.seed}
        for key in ("temperature", "top_p", "top_k", "repeat_penalty", "frequency_penalty"):
            value = getattr(self, key)
            if value is not None:
                options[key] = value
        options.update(self.extra)
        return options

    def think_value(self) -> Union[bool, str]:
        """Значение поля think: уровень, если задан, иначе флаг"""
        return self.think_level if self.think_level else self.enable_thinking


class QuantResult(BaseModel):
    """Результат одного тестируемого тега (квантизации)"""
    model_config = ConfigDict(protected_namespaces=())

    tag: str
    model_name: str = ""
    repository_url: Optional[str] = None
    disk_size_bytes: int = 0
    digest: Optional[str] = None
    short_digest: Optional[str] = None
    family: str = ""
    parameter_size: str = ""
    quantization_type: str = ""
    is_base: bool = False
    pulled_on_demand: bool = False
    preflight_result: Optional[PreflightCheckResult] = None

    overall_score: float = 0.0
    total_questions: int = 0
    correct_answers: int = 0
    category_results: List[CategoryResult] = Field(default_factory=list)

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    is_complete: bool = False

    # Метаданные тега
    judge_model: Optional[str] = None
    judge_provider: Optional[str] = None
    test_server_url: Optional[str] = None
    server_version: Optional[str] = None
    judge_server_version: Optional[str] = None
    test_options: Optional[TestOptions] = None

    def get_category(self, name: str) -> Optional[CategoryResult]:
        for category in self.category_results:
            if category.category == name:
                return category
        return None

    def all_questions(self) -> List[QuestionResult]:
        return [q for c in self.category_results for q in c.all_questions()]

    def computed_overall_score(self) -> float:
        """Среднее оценок категорий с весом log2(контекст)"""
        weighted_sum = 0.0
        total_weight = 0.0
        for category in self.category_results:
            if category.total_questions > 0 and category.target_context_length > 0:
                weight = math.log2(category.target_context_length)
                weighted_sum += category.score * weight
                total_weight += weight
        return weighted_sum / total_weight if total_weight > 0 else 0.0

    def recalculate(self) -> None:
        """Пересчитать все оценки тега"""
        for category in self.category_results:
            category.recalculate()
        self.total_questions = sum(c.total_questions for c in self.category_results)
        self.correct_answers = sum(c.correct_answers for c in self.category_results)
        self.overall_score = self.computed_overall_score()

    @property
    def category_names(self) -> List[str]:
        return [c.category for c in self.category_results]


class ResultsFile(BaseModel):
    """
    Файл результатов

    Привязан к дайджесту тестового набора и имени модели: при несовпадении
    продолжать тестирование можно только с --force.
    """
    model_config = ConfigDict(protected_namespaces=())

    test_suite_name: str = ""
    test_suite_digest: Optional[str] = None
    test_type: str = ""
    test_description: str = ""
    model_name: str = ""
    judge_model: Optional[str] = None
    judge_provider: Optional[str] = None
    judge_api_version: Optional[str] = None
    options: TestOptions = Field(default_factory=TestOptions)
    tested_at: datetime = Field(default_factory=datetime.now)
    tool_version: Optional[str] = None
    server_version: Optional[str] = None
    judge_server_version: Optional[str] = None
    test_server_url: Optional[str] = None
    judge_server_url: Optional[str] = None
    max_context_length: int = 0
    category_limit: Optional[str] = None
    results: List[QuantResult] = Field(default_factory=list)

    def get_tag(self, tag: str) -> Optional[QuantResult]:
        for result in self.results:
            if result.tag == tag:
                return result
        return None

    def base_result(self) -> Optional[QuantResult]:
        for result in self.results:
            if result.is_base:
                return result
        return None

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    def summary(self) -> Dict[str, Any]:
        """Краткая сводка для логов"""
        return {
            "model": self.model_name,
            "tags": len(self.results),
            "complete": sum(1 for r in self.results if r.is_complete),
        }
