"""
Judgment - оценка ответов моделью-судьёй

Отвечает за:
- Сборку промптов судьи с переопределениями на уровне вопроса,
  подкатегории, категории и набора
- Разбор вердикта (JSON с Answer/Reason или YES в тексте)
- Повторы запросов к судье с растущей задержкой
- Последовательную оценку тега и фоновую очередь для параллельного режима

Судьи:
- LocalJudge: модель на сервере инференса (format "json")
- CloudJudge: облачный провайдер (ctxbench.clients.cloud)
"""

import re
import json
import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Tuple, Dict, Callable

from ..clients.cloud import CloudJudgeProvider
from ..clients.ollama import OllamaClient
from ..schemas.messages import ChatMessage
from ..schemas.results import CORRECT_SCORE, Judgment, QuantResult, QuestionResult
from ..schemas.suite import Category, Question, SubCategory, TestSuite


logger = logging.getLogger(__name__)


DEFAULT_JUDGE_SYSTEM_PROMPT = (
    "You are an impartial judge evaluating answer correctness.\n"
    "Your task is to determine if a model's answer matches the reference answer.\n"
    "Be lenient with minor wording differences but strict with factual accuracy.\n"
    'Always respond in valid JSON format: {"Answer": "YES" or "NO", "Reason": "explanation"}'
)

DEFAULT_JUDGE_PROMPT = (
    "Evaluate if the model's answer is correct compared to the reference answer.\n"
    "\n"
    "Question: %%QUESTION%%\n"
    "\n"
    "Reference Answer: %%REF_ANSWER%%\n"
    "\n"
    "Model Answer: %%MODEL_ANSWER%%\n"
    "\n"
    "Respond in JSON format with two fields:\n"
    '- "Answer": "YES" if the model answer is correct or equivalent, "NO" if incorrect\n'
    '- "Reason": Brief explanation of your judgment\n'
    "\n"
    "Consider an answer correct if it conveys the same meaning, even if worded differently."
)

ERROR_ANSWER = "ERROR"

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_THINK_END = re.compile(r"</think>", re.IGNORECASE)


# =============================================================================
# Промпты и разбор вердикта
# =============================================================================

def strip_thinking(text: Optional[str]) -> str:
    """Убрать рассуждения из ответа модели перед оценкой"""
    if not text:
        return ""
    result = _THINK_BLOCK.sub("", text)
    match = _THINK_END.search(result)
    if match:
        result = result[match.end():]
    return result.strip()


def build_judge_prompts(
    suite: TestSuite,
    category: Category,
    sub_category: Optional[SubCategory],
    question: Question,
    model_answer: str,
) -> Tuple[str, str]:
    """
    Собрать (system, user) промпты судьи

    Приоритет: вопрос > подкатегория > категория > набор > по умолчанию.
    """
    sub_prompt = sub_category.judge_prompt if sub_category else None
    sub_system = sub_category.judge_system_prompt if sub_category else None

    prompt = (
        question.judge_prompt
        or sub_prompt
        or category.judge_prompt
        or suite.judge_prompt
        or DEFAULT_JUDGE_PROMPT
    )
    system_prompt = (
        question.judge_system_prompt
        or sub_system
        or category.judge_system_prompt
        or suite.judge_system_prompt
        or DEFAULT_JUDGE_SYSTEM_PROMPT
    )

    user_prompt = (
        prompt.replace("%%QUESTION%%", question.text)
        .replace("%%REF_ANSWER%%", question.reference_answer)
        .replace("%%MODEL_ANSWER%%", strip_thinking(model_answer))
    )
    return system_prompt, user_prompt


def parse_verdict(raw: str) -> Judgment:
    """
    Разобрать ответ судьи

    JSON ищется между первой '{' и последней '}'; если разобрать не
    удалось, вердикт YES ставится при наличии YES в тексте.
    """
    raw = raw or ""
    start = raw.find("{")
    end = raw.rfind("}")

    if start >= 0 and end > start:
        try:
            data = json.loads(raw[start:end + 1])
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            answer = data.get("Answer", data.get("answer"))
            reason = data.get("Reason", data.get("reason"))
            return Judgment(
                answer=str(answer) if answer is not None else "NO",
                reason=str(reason) if reason is not None else "",
                raw_response=raw,
            )

    return Judgment(
        answer="YES" if "YES" in raw.upper() else "NO",
        reason="Parsed from response text",
        raw_response=raw,
    )


# =============================================================================
# Судьи
# =============================================================================

@dataclass
class JudgeReply:
    """Ответ судьи с метриками (у облачных судей только время)"""
    text: str
    elapsed: float = 0.0
    prompt_toks_per_sec: Optional[float] = None
    eval_toks_per_sec: Optional[float] = None


class LocalJudge:
    """Судья на сервере инференса"""

    def __init__(self, client: OllamaClient, model: str, ctx_size: int = 0, num_predict: int = 8192):
        self.client = client
        self.model = model
        self.ctx_size = ctx_size
        self.num_predict = num_predict

    @property
    def name(self) -> str:
        return self.model

    @property
    def provider(self) -> Optional[str]:
        return None

    def context_size_for(self, prompt: str) -> int:
        if self.ctx_size > 0:
            return self.ctx_size
        return max(8192, (len(prompt) // 4) * 2 + 2048)

    def ask(self, system_prompt: str, user_prompt: str) -> JudgeReply:
        """
        Raises:
            RuntimeError: Если сервер вернул ошибку
        """
        result = self.client.chat(
            model=self.model,
            messages=[ChatMessage.system(system_prompt), ChatMessage.user(user_prompt)],
            options={"num_ctx": self.context_size_for(user_prompt), "num_predict": self.num_predict},
            response_format="json",
            logprobs=False,
        )
        if not result.success:
            raise RuntimeError(result.error or "judge request failed")
        return JudgeReply(
            text=result.content,
            elapsed=result.elapsed_time,
            prompt_toks_per_sec=result.prompt_toks_per_sec,
            eval_toks_per_sec=result.eval_toks_per_sec,
        )


class CloudJudge:
    """Судья через облачный API"""

    def __init__(self, provider: CloudJudgeProvider, max_tokens: int = 1024):
        self.cloud = provider
        self.max_tokens = max_tokens

    @property
    def name(self) -> str:
        return self.cloud.model_name

    @property
    def provider(self) -> Optional[str]:
        return self.cloud.provider_name

    def ask(self, system_prompt: str, user_prompt: str) -> JudgeReply:
        start = time.time()
        text = self.cloud.judge(system_prompt, user_prompt, self.max_tokens)
        return JudgeReply(text=text, elapsed=time.time() - start)


@dataclass
class JudgeOutcome:
    """Вердикт и оценка одного ответа"""
    judgment: Judgment
    score: float
    reply: Optional[JudgeReply] = None

    @property
    def is_correct(self) -> bool:
        return self.score >= CORRECT_SCORE


class JudgmentService:
    """
    Оценка ответов с повторами

    Задержка между попытками начинается с retry_delay_ms и растёт на
    столько же после каждой неудачи, не превышая max_retry_delay_ms.

    Example:
        service = JudgmentService(LocalJudge(client, "qwen3:32b"))
        outcome = service.judge_answer(suite, category, None, question, answer)
    """

    def __init__(
        self,
        judge,
        max_attempts: int = 25,
        retry_delay_ms: int = 5000,
        max_retry_delay_ms: int = 30000,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.judge = judge
        self.max_attempts = max_attempts
        self.retry_delay_ms = retry_delay_ms
        self.max_retry_delay_ms = max_retry_delay_ms
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, judge) -> "JudgmentService":
        return cls(
            judge,
            max_attempts=settings.judge.max_retry_attempts,
            retry_delay_ms=settings.judge.retry_delay_ms,
            max_retry_delay_ms=settings.judge.max_retry_delay_ms,
        )

    def ask_with_retry(self, system_prompt: str, user_prompt: str) -> JudgeReply:
        """
        Запрос к судье с повторами

        Raises:
            Exception: Последняя ошибка после исчерпания попыток
        """
        delay_ms = self.retry_delay_ms
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.judge.ask(system_prompt, user_prompt)
            except Exception as e:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    f"Судья: попытка {attempt}/{self.max_attempts} не удалась ({e}), "
                    f"повтор через {delay_ms / 1000:.0f}s"
                )
                self._sleep(delay_ms / 1000.0)
                delay_ms = min(delay_ms + self.retry_delay_ms, self.max_retry_delay_ms)
        raise RuntimeError("judge retry loop exhausted")

    def judge_answer(
        self,
        suite: TestSuite,
        category: Category,
        sub_category: Optional[SubCategory],
        question: Question,
        model_answer: str,
    ) -> JudgeOutcome:
        """Оценить ответ; любая ошибка превращается в вердикт ERROR с оценкой 0"""
        system_prompt, user_prompt = build_judge_prompts(suite, category, sub_category, question, model_answer)
        try:
            reply = self.ask_with_retry(system_prompt, user_prompt)
        except Exception as e:
            logger.error(f"Судья не ответил на вопрос {question.id}: {e}")
            return JudgeOutcome(judgment=Judgment(answer=ERROR_ANSWER, reason=str(e)), score=0.0)

        judgment = parse_verdict(reply.text)
        score = CORRECT_SCORE if judgment.is_correct else 0.0
        return JudgeOutcome(judgment=judgment, score=score, reply=reply)


def apply_outcome(question_result: QuestionResult, outcome: JudgeOutcome) -> None:
    question_result.judgment = outcome.judgment
    question_result.score = outcome.score


# =============================================================================
# Последовательная оценка
# =============================================================================

@dataclass
class JudgmentItem:
    """Ответ в очереди на оценку"""
    question_result: QuestionResult
    question: Question
    category: Category
    sub_category: Optional[SubCategory] = None
    tag_result: Optional[QuantResult] = None
    seq: int = 0


def collect_pending(tag_result: QuantResult, suite: TestSuite, rejudge: bool = False) -> List[JudgmentItem]:
    """
    Ответы тега, которые нужно оценить, в порядке набора

    Пропускаются пустые ответы и ответы с ошибкой; уже оценённые —
    только без rejudge.
    """
    items: List[JudgmentItem] = []
    for category_result in tag_result.category_results:
        category = suite.get_category(category_result.category)
        if category is None:
            continue

        pairs: List[Tuple[Optional[SubCategory], List[Question], List[QuestionResult]]] = []
        if category_result.sub_category_results:
            for sub_result in category_result.sub_category_results:
                sub = next((s for s in category.sub_categories or [] if s.name == sub_result.sub_category), None)
                if sub is not None:
                    pairs.append((sub, sub.questions, sub_result.question_results))
        else:
            pairs.append((None, category.questions or [], category_result.question_results or []))

        for sub, questions, results in pairs:
            by_id = {q.id: q for q in questions}
            for question_result in results:
                question = by_id.get(question_result.question_id)
                if question is None or not question_result.model_answer or question_result.is_error:
                    continue
                if question_result.judgment is not None and not rejudge:
                    continue
                items.append(JudgmentItem(question_result, question, category, sub, tag_result))
    return items


def judge_tag_serial(
    service: JudgmentService,
    tag_result: QuantResult,
    suite: TestSuite,
    rejudge: bool = False,
    cancel_event: Optional[asyncio.Event] = None,
) -> int:
    """
    Оценить ответы тега по порядку

    Оценки категорий и тега пересчитываются после каждого вердикта.

    Returns:
        Количество оценённых ответов
    """
    items = collect_pending(tag_result, suite, rejudge)
    total = len(items)
    if total == 0:
        logger.info(f"{tag_result.tag}: нет ответов для оценки")
        return 0

    sub_totals: Dict[str, int] = {}
    cat_totals: Dict[str, int] = {}
    for item in items:
        key = f"{item.category.name}/{item.sub_category.name if item.sub_category else ''}"
        sub_totals[key] = sub_totals.get(key, 0) + 1
        cat_totals[item.category.name] = cat_totals.get(item.category.name, 0) + 1

    sub_current: Dict[str, int] = {}
    judged = 0
    for item in items:
        if cancel_event is not None and cancel_event.is_set():
            break

        outcome = service.judge_answer(
            suite, item.category, item.sub_category, item.question, item.question_result.model_answer
        )
        apply_outcome(item.question_result, outcome)
        judged += 1

        key = f"{item.category.name}/{item.sub_category.name if item.sub_category else ''}"
        sub_current[key] = sub_current.get(key, 0) + 1
        label = item.category.name + (f"/{item.sub_category.name}" if item.sub_category else "")
        logger.info(
            f"Q{judged}/{total}: {'CORRECT' if outcome.is_correct else 'INCORRECT'} "
            f"({label}: {sub_current[key]}/{sub_totals[key]}/{cat_totals[item.category.name]})"
        )

        tag_result.recalculate()

    return judged


# =============================================================================
# Параллельная оценка
# =============================================================================

@dataclass
class CompletedJudgment:
    """Запись о завершённой фоновой оценке"""
    seq: int
    category: str
    sub_category: Optional[str]
    answer: str
    reason: str
    is_correct: bool


@dataclass
class JudgmentProgress:
    queued: int = 0
    completed: int = 0
    judge_times: List[float] = field(default_factory=list)
    prompt_speeds: List[float] = field(default_factory=list)
    eval_speeds: List[float] = field(default_factory=list)

    @property
    def avg_time(self) -> float:
        return sum(self.judge_times) / len(self.judge_times) if self.judge_times else 0.0

    @property
    def max_time(self) -> float:
        return max(self.judge_times) if self.judge_times else 0.0

    def summary(self) -> str:
        parts = [f"Judged {self.completed}/{self.queued}"]
        if self.judge_times:
            parts.append(f"Avg: {self.avg_time:.1f}s Max: {self.max_time:.1f}s")
        if self.prompt_speeds:
            parts.append(f"p:{sum(self.prompt_speeds) / len(self.prompt_speeds):.0f}")
        if self.eval_speeds:
            parts.append(f"e:{sum(self.eval_speeds) / len(self.eval_speeds):.0f} t/s")
        return " ".join(parts)


class ParallelJudgmentQueue:
    """
    Фоновая оценка ответов во время тестирования

    Производитель — цикл вопросов, потребитель — одна задача asyncio.
    close() ставит маркер конца очереди, join() ждёт, пока потребитель
    обработает всё поставленное до маркера.

    Example:
        queue = ParallelJudgmentQueue(service, suite)
        queue.start()
        queue.enqueue(JudgmentItem(...))
        queue.close()
        await queue.join()
    """

    def __init__(
        self,
        service: JudgmentService,
        suite: TestSuite,
        on_judged: Optional[Callable[[JudgmentItem, JudgeOutcome], None]] = None,
    ):
        self.service = service
        self.suite = suite
        self.on_judged = on_judged
        self.progress = JudgmentProgress()
        self._completed: List[CompletedJudgment] = []
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def queued(self) -> int:
        return self.progress.queued

    @property
    def completed(self) -> int:
        return self.progress.completed

    @property
    def completed_judgments(self) -> List[CompletedJudgment]:
        """Завершённые оценки в порядке постановки"""
        return sorted(self._completed, key=lambda j: j.seq)

    def start(self) -> None:
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._consume())

    def enqueue(self, item: JudgmentItem) -> None:
        self.progress.queued += 1
        item.seq = self.progress.queued
        self._queue.put_nowait(item)

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def join(self) -> None:
        """Дождаться оценки всех поставленных ответов"""
        if self._task is not None:
            await self._task

    async def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                break

            outcome = await asyncio.to_thread(
                self.service.judge_answer,
                self.suite,
                item.category,
                item.sub_category,
                item.question,
                item.question_result.model_answer,
            )
            apply_outcome(item.question_result, outcome)
            if item.tag_result is not None:
                item.tag_result.recalculate()

            self.progress.completed += 1
            if outcome.reply is not None:
                self.progress.judge_times.append(outcome.reply.elapsed)
                if outcome.reply.prompt_toks_per_sec:
                    self.progress.prompt_speeds.append(outcome.reply.prompt_toks_per_sec)
                if outcome.reply.eval_toks_per_sec:
                    self.progress.eval_speeds.append(outcome.reply.eval_toks_per_sec)

            self._completed.append(CompletedJudgment(
                seq=item.seq,
                category=item.category.name,
                sub_category=item.sub_category.name if item.sub_category else None,
                answer=outcome.judgment.answer,
                reason=outcome.judgment.reason,
                is_correct=outcome.is_correct,
            ))
            logger.debug(f"Фоновая оценка Q{item.seq}: {outcome.judgment.answer}")

            if self.on_judged is not None:
                self.on_judged(item, outcome)
