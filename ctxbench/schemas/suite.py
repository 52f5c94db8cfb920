"""
Suite Schemas — схемы тестового набора

Отвечает за:
- Вопросы (Question)
- Подкатегории (SubCategory) и категории контекста (Category)
- Тестовый набор целиком (TestSuite) и его загрузку с дайджестом
"""

from pathlib import Path
from typing import Optional, List, Tuple, Union

from pydantic import BaseModel, Field, model_validator

from ..errors import SuiteValidationError
from ..utils.file_ops import load_json
from ..utils.hashing import compute_file_digest


class Question(BaseModel):
    """Вопрос к модели"""
    id: int
    text: str
    reference_answer: str = ""
    about_category: Optional[str] = None
    expected_tools: Optional[List[str]] = None
    judge_prompt: Optional[str] = None
    judge_system_prompt: Optional[str] = None


class SubCategory(BaseModel):
    """
    Подкатегория вопросов

    Обычно "Old" (вопросы о предыдущих категориях) и "New"
    (вопросы о контексте текущей категории).
    """
    name: str
    about_categories: Optional[List[str]] = None
    judge_prompt: Optional[str] = None
    judge_system_prompt: Optional[str] = None
    questions: List[Question] = Field(default_factory=list)


class Category(BaseModel):
    """
    Категория контекста (2k, 4k, 8k, ...)

    Содержит текст контекста и либо плоский список вопросов,
    либо подкатегории.
    """
    name: str
    context_length: int = Field(..., gt=0)
    context: str = ""
    judge_prompt: Optional[str] = None
    judge_system_prompt: Optional[str] = None
    questions: Optional[List[Question]] = None
    sub_categories: Optional[List[SubCategory]] = None

    @property
    def total_questions(self) -> int:
        """Всего вопросов в категории"""
        if self.sub_categories:
            return sum(len(sub.questions) for sub in self.sub_categories)
        return len(self.questions or [])

    @property
    def needs_tools(self) -> bool:
        """Ожидаются ли вызовы инструментов в этой категории"""
        for _, question in self.iter_questions():
            if question.expected_tools:
                return True
        return False

    def iter_questions(self) -> List[Tuple[Optional[SubCategory], Question]]:
        """Все вопросы в порядке набора вместе с подкатегорией"""
        if self.sub_categories:
            return [(sub, q) for sub in self.sub_categories for q in sub.questions]
        return [(None, q) for q in (self.questions or [])]


class TestSuite(BaseModel):
    """
    Тестовый набор

    Категории идут в порядке возрастания контекста; каждая следующая
    видит всю историю диалога предыдущих.
    """
    __test__ = False

    test_type: str = "ctxbench"
    test_description: str = ""
    max_context_length: int = 0
    judge_required: bool = True
    judge_prompt: Optional[str] = None
    judge_system_prompt: Optional[str] = None
    tools_enabled: bool = False
    enabled_tools: Optional[List[str]] = None
    system_prompt: Optional[str] = None
    instructions: Optional[str] = None
    num_predict: Optional[int] = None
    context_length_overhead: int = 2048
    context_length_overhead_thinking: int = 4096
    context_header: Optional[str] = None
    categories: List[Category] = Field(default_factory=list)

    @model_validator(mode="after")
    def _fill_max_context(self) -> "TestSuite":
        if not self.max_context_length and self.categories:
            self.max_context_length = max(c.context_length for c in self.categories)
        return self

    @property
    def total_questions(self) -> int:
        """Всего вопросов в наборе"""
        return sum(c.total_questions for c in self.categories)

    @property
    def needs_tools(self) -> bool:
        """Нужен ли pre-flight инструментов"""
        return self.tools_enabled or any(c.needs_tools for c in self.categories)

    def get_category(self, name: str) -> Optional[Category]:
        """Найти категорию по имени (без учёта регистра)"""
        for category in self.categories:
            if category.name.lower() == name.lower():
                return category
        return None

    def overhead_for(self, thinking: bool) -> int:
        """Запас контекста на вопросы/ответы (больше для thinking-моделей)"""
        return self.context_length_overhead_thinking if thinking else self.context_length_overhead


def load_suite(path: Union[str, Path]) -> Tuple[TestSuite, str]:
    """
    Загрузить тестовый набор и вычислить его дайджест

    Args:
        path: Путь к JSON файлу набора

    Returns:
        (TestSuite, sha256 дайджест файла)

    Raises:
        FileNotFoundError: Если файл не найден
        SuiteValidationError: Если набор пустой
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Test suite not found: {path}")

    suite = TestSuite.model_validate(load_json(path))
    if not suite.categories:
        raise SuiteValidationError(f"Test suite has no categories: {path}")

    return suite, compute_file_digest(path)
