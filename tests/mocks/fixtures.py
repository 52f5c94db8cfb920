"""
Построители тестовых наборов и результатов
"""

from typing import List, Optional

from ctxbench.schemas.results import (
    CategoryResult,
    Judgment,
    QuantResult,
    QuestionResult,
    ResultsFile,
    TokenLogprob,
)
from ctxbench.schemas.suite import TestSuite


def logprobs(*pairs) -> List[TokenLogprob]:
    """logprobs(("a", -0.1), ("b", -0.2))"""
    return [TokenLogprob(token=t, logprob=lp) for t, lp in pairs]


def make_suite(**overrides) -> TestSuite:
    """
    Набор из двух категорий: 2k с плоским списком вопросов и 4k с
    подкатегориями Old/New
    """
    data = {
        "test_type": "ctxbench",
        "judge_required": False,
        "instructions": "Read the book and answer briefly.",
        "categories": [
            {
                "name": "2k",
                "context_length": 2048,
                "context": "The fox is called Rusty. The owl is called Hoot.",
                "questions": [
                    {"id": 1, "text": "What is the fox called?", "reference_answer": "Rusty"},
                    {"id": 2, "text": "What is the owl called?", "reference_answer": "Hoot"},
                ],
            },
            {
                "name": "4k",
                "context_length": 4096,
                "context": "The bear is called Bruno.",
                "sub_categories": [
                    {
                        "name": "Old",
                        "questions": [
                            {"id": 3, "text": "What is the fox called again?", "reference_answer": "Rusty"},
                        ],
                    },
                    {
                        "name": "New",
                        "questions": [
                            {"id": 4, "text": "What is the bear called?", "reference_answer": "Bruno"},
                        ],
                    },
                ],
            },
        ],
    }
    data.update(overrides)
    return TestSuite.model_validate(data)


def make_question_result(
    question_id: int,
    answer: str = "answer",
    score: float = 0.0,
    judged: Optional[str] = None,
    tokens: Optional[List[TokenLogprob]] = None,
    eval_speed: Optional[float] = None,
    prompt_speed: Optional[float] = None,
) -> QuestionResult:
    result = QuestionResult(
        question_id=question_id,
        question=f"Q{question_id}",
        reference_answer="ref",
        model_answer=answer,
        score=score,
        tokens=tokens or [],
        completion_tokens=len(tokens) if tokens else None,
        eval_toks_per_sec=eval_speed,
        prompt_toks_per_sec=prompt_speed,
    )
    if judged is not None:
        result.judgment = Judgment(answer=judged, reason="test")
    return result


def make_category_result(name: str, context_length: int, questions: List[QuestionResult], complete: bool = True) -> CategoryResult:
    category = CategoryResult(
        category=name,
        target_context_length=context_length,
        question_results=questions,
        is_complete=complete,
    )
    category.recalculate()
    return category


def make_tag_result(tag: str, categories: List[CategoryResult], is_base: bool = False, complete: bool = True, size: int = 0) -> QuantResult:
    result = QuantResult(
        tag=tag,
        model_name=tag.split(":")[0],
        is_base=is_base,
        is_complete=complete,
        disk_size_bytes=size,
        quantization_type=tag.split(":")[-1].upper(),
        category_results=categories,
    )
    result.recalculate()
    return result


def make_results_file(results: List[QuantResult], digest: str = "sha256:" + "cd" * 32, model_name: str = "qwen3") -> ResultsFile:
    return ResultsFile(
        test_suite_name="ctxbench",
        test_suite_digest=digest,
        test_type="ctxbench",
        model_name=model_name,
        results=results,
    )
