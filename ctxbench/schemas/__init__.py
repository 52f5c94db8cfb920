"""
Data Schemas - схемы данных для бенчмарка

Экспортирует все схемы из подмодулей:
- suite: Question, SubCategory, Category, TestSuite, load_suite
- messages: ChatMessage, ChatResult, ToolCall
- results: QuestionResult, CategoryResult, QuantResult, ResultsFile, ...
- calibration: CalibrationData, CalibrationCategory, CalibrationStep
"""

from .suite import (
    Question,
    SubCategory,
    Category,
    TestSuite,
    load_suite,
)

from .results import (
    Judgment,
    ToolUsage,
    TokenLogprob,
    QuestionResult,
    SubCategoryResult,
    CategoryResult,
    PreflightCheckResult,
    TestOptions,
    QuantResult,
    ResultsFile,
)

from .messages import (
    ChatMessage,
    ChatResult,
    ToolCall,
)

from .calibration import (
    CalibrationData,
    CalibrationCategory,
    CalibrationStep,
    CalibrationSummary,
)

__all__ = [
    # Suite
    "Question",
    "SubCategory",
    "Category",
    "TestSuite",
    "load_suite",
    # Results
    "Judgment",
    "ToolUsage",
    "TokenLogprob",
    "QuestionResult",
    "SubCategoryResult",
    "CategoryResult",
    "PreflightCheckResult",
    "TestOptions",
    "QuantResult",
    "ResultsFile",
    # Messages
    "ChatMessage",
    "ChatResult",
    "ToolCall",
    # Calibration
    "CalibrationData",
    "CalibrationCategory",
    "CalibrationStep",
    "CalibrationSummary",
]
