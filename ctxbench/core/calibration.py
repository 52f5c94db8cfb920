"""
CalibrationRecorder — калибровка оценщика токенов

Для каждого шага диалога (инструкции, контекст, предыдущий ответ, вопрос)
сравнивает накопленную оценку по символам с фактическим числом токенов
промпта и выводит рекомендуемый коэффициент символов на токен.

Работает в стороне от тестирования: ошибки здесь только логируются.
"""

import logging
import math
import re
from pathlib import Path
from typing import Optional, Union

from ..schemas.calibration import (
    CalibrationData,
    CalibrationCategory,
    CalibrationStep,
    CalibrationSummary,
)
from ..utils.file_ops import save_json
from ..utils.tokenizer import chars_per_token_for_context, DEFAULT_CHARS_PER_TOKEN


logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100
TOLERANCE_PERCENT = 5.0


def calibration_file_name(model_name: str, tag: str) -> str:
    """Имя файла калибровки: calibration_<model>_<tag>.json"""
    return re.sub(r"[:/]", "_", f"calibration_{model_name}_{tag}.json")


def target_fill_percent(context_length: int) -> float:
    """Целевое заполнение: 90% для малых контекстов, 95% для остальных"""
    return 0.90 if context_length <= 4096 else 0.95


class CalibrationRecorder:
    """
    Накопитель шагов калибровки

    Счётчики символов и оценки не сбрасываются между категориями:
    промпт каждой следующей категории содержит всю историю.

    Example:
        recorder = CalibrationRecorder("qwen3:8b")
        recorder.start_category("4k", 4096)
        recorder.track_step("Question1", "question", text, actual_prompt=812, actual_output=40)
        recorder.finish_category()
        recorder.save("calibration_qwen3_8b.json")
    """

    def __init__(self, model_name: str, tool_version: str = ""):
        self.data = CalibrationData(
            model_name=model_name,
            tool_version=tool_version,
            chars_per_token_ratio=DEFAULT_CHARS_PER_TOKEN,
        )
        self.current: Optional[CalibrationCategory] = None
        self.cumulative_chars = 0
        self.cumulative_estimate = 0

    def start_category(self, name: str, target_context_length: int) -> CalibrationCategory:
        """Начать новую категорию"""
        self.current = CalibrationCategory(
            name=name,
            target_context_length=target_context_length,
            target_fill_percent=target_fill_percent(target_context_length),
        )
        self.data.categories[name] = self.current
        return self.current

    def track_step(
        self,
        step_name: str,
        step_type: str,
        text: str,
        actual_prompt: int,
        actual_output: int,
    ) -> Optional[CalibrationStep]:
        """
        Записать шаг диалога

        Args:
            step_name: Имя шага (Instructions, Context, Answer3, Question7)
            step_type: Тип шага (instructions, context, answer, question)
            text: Текст шага
            actual_prompt: Фактический prompt_eval_count после шага
            actual_output: Фактический eval_count ответа

        Returns:
            Записанный шаг или None, если категория не начата
        """
        if self.current is None:
            return None

        char_count = len(text or "")
        self.cumulative_chars += char_count

        ratio = chars_per_token_for_context(self.current.target_context_length)
        estimated = math.ceil(char_count / ratio)
        self.cumulative_estimate = math.ceil(self.cumulative_chars / ratio)

        delta = actual_prompt - self.cumulative_estimate
        delta_percent = delta * 100.0 / self.cumulative_estimate if self.cumulative_estimate > 0 else 0.0
        effective = self.cumulative_chars / actual_prompt if actual_prompt > 0 else 0.0

        preview = (text or "")[:PREVIEW_LENGTH]
        if char_count > PREVIEW_LENGTH:
            preview += "..."

        step = CalibrationStep(
            step_name=step_name,
            step_type=step_type,
            char_count=char_count,
            estimated_tokens=estimated,
            cumulative_estimate=self.cumulative_estimate,
            actual_prompt_tokens=actual_prompt,
            actual_output_tokens=actual_output,
            delta=delta,
            delta_percent=delta_percent,
            effective_chars_per_token=effective,
            text_preview=preview,
        )
        self.current.steps.append(step)
        return step

    def finish_category(self) -> Optional[CalibrationSummary]:
        """Подвести итог текущей категории по последнему шагу"""
        category = self.current
        if category is None or not category.steps:
            return None

        last = category.steps[-1]
        actual = last.actual_prompt_tokens
        effective_values = [s.effective_chars_per_token for s in category.steps if s.effective_chars_per_token > 0]

        summary = CalibrationSummary(
            total_chars=self.cumulative_chars,
            total_estimated_tokens=last.cumulative_estimate,
            final_actual_prompt_tokens=actual,
            final_actual_output_tokens=last.actual_output_tokens,
            overall_delta=last.delta,
            overall_delta_percent=last.delta_percent,
            avg_effective_chars_per_token=(
                sum(effective_values) / len(effective_values) if effective_values else 0.0
            ),
            recommended_chars_per_token=self.cumulative_chars / actual if actual > 0 else 0.0,
            context_fill_percent=(
                actual * 100.0 / category.target_context_length if category.target_context_length > 0 else 0.0
            ),
            within_tolerance=abs(last.delta_percent) <= TOLERANCE_PERCENT,
        )
        category.summary = summary

        logger.info(
            f"Калибровка {category.name}: символов={summary.total_chars}, "
            f"оценка={summary.total_estimated_tokens}, факт={actual}, "
            f"delta={summary.overall_delta_percent:+.1f}%, "
            f"рекомендуемый коэффициент={summary.recommended_chars_per_token:.2f}"
        )
        return summary

    def save(self, path: Union[str, Path]) -> Optional[Path]:
        """Сохранить данные калибровки; ошибки записи только логируются"""
        path = Path(path)
        try:
            save_json(self.data.model_dump(mode="json"), path)
        except OSError as e:
            logger.error(f"Не удалось сохранить калибровку в {path}: {e}")
            return None
        logger.info(f"Калибровка сохранена: {path}")
        return path
