"""
Calibration Schemas — данные калибровки оценщика токенов

Сравнивают оценку по символам с фактическим числом токенов промпта,
которое вернул сервер, на каждом шаге диалога.
"""

from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field


class CalibrationStep(BaseModel):
    """Один шаг диалога (инструкции, контекст, ответ, вопрос)"""
    step_name: str
    step_type: str
    char_count: int = 0
    estimated_tokens: int = 0
    cumulative_estimate: int = 0
    actual_prompt_tokens: int = 0
    actual_output_tokens: int = 0
    delta: int = 0
    delta_percent: float = 0.0
    effective_chars_per_token: float = 0.0
    text_preview: str = ""


class CalibrationSummary(BaseModel):
    """Итог по категории"""
    total_chars: int = 0
    total_estimated_tokens: int = 0
    final_actual_prompt_tokens: int = 0
    final_actual_output_tokens: int = 0
    overall_delta: int = 0
    overall_delta_percent: float = 0.0
    avg_effective_chars_per_token: float = 0.0
    recommended_chars_per_token: float = 0.0
    context_fill_percent: float = 0.0
    within_tolerance: bool = False


class CalibrationCategory(BaseModel):
    """Калибровка одной категории"""
    name: str
    target_context_length: int
    target_fill_percent: float
    steps: List[CalibrationStep] = Field(default_factory=list)
    summary: CalibrationSummary = Field(default_factory=CalibrationSummary)


class CalibrationData(BaseModel):
    """Файл калибровки"""
    model_config = ConfigDict(protected_namespaces=())

    model_name: str = ""
    calibrated_at: datetime = Field(default_factory=datetime.now)
    tool_version: str = ""
    chars_per_token_ratio: float = 0.0
    categories: Dict[str, CalibrationCategory] = Field(default_factory=dict)
