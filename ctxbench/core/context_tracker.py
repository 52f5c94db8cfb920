"""
ContextTracker — учёт заполнения контекстного окна в пределах категории

Создаётся заново в начале каждой категории, в файл результатов не
сохраняется: пиковые значения копируются в CategoryResult.

Число токенов промпта, которое возвращает сервер, уже включает всю
историю диалога, поэтому последняя сумма prompt + output и есть
накопленный объём контекста.
"""

from typing import Optional


class ContextTracker:
    """
    Учёт токенов prompt/output/thinking относительно целевого размера
    категории и жёсткого предела контекста

    Переполнение фиксируется только при превышении жёсткого предела;
    превышение целевого размера отражается лишь в проценте заполнения.

    Example:
        tracker = ContextTracker(4096, actual_max_context=6144)
        tracker.update_from_response(3000, 200, 50)
        print(tracker.summary())
    """

    def __init__(self, target_context: int, actual_max_context: int = 0):
        """
        Args:
            target_context: Целевой размер контекста категории
            actual_max_context: Жёсткий предел (num_ctx); 0 — равен целевому
        """
        self.max_context = target_context
        self.actual_max_context = actual_max_context if actual_max_context > 0 else target_context

        self.prompt_tokens = 0
        self.output_tokens = 0
        self.thinking_tokens = 0
        self.cumulative_thinking_tokens = 0

        self.peak_prompt_tokens = 0
        self.peak_output_tokens = 0
        self.peak_total_used = 0
        self.peak_thinking_tokens = 0
        self.has_overflowed = False

    @property
    def total_used(self) -> int:
        return self.prompt_tokens + self.output_tokens

    @property
    def usage_percent(self) -> float:
        return self.total_used * 100.0 / self.max_context if self.max_context > 0 else 0.0

    @property
    def remaining(self) -> int:
        return self.max_context - self.total_used

    @property
    def peak_usage_percent(self) -> float:
        return self.peak_total_used * 100.0 / self.max_context if self.max_context > 0 else 0.0

    def update_from_response(
        self,
        prompt_tokens: Optional[int],
        output_tokens: Optional[int],
        thinking_tokens: Optional[int] = None,
    ) -> None:
        """
        Учесть очередной ответ сервера

        Args:
            prompt_tokens: prompt_eval_count ответа
            output_tokens: eval_count ответа (вместе с thinking)
            thinking_tokens: Оценка токенов рассуждений
        """
        self.prompt_tokens = prompt_tokens or 0
        self.output_tokens = output_tokens or 0
        self.thinking_tokens = thinking_tokens or 0

        self.cumulative_thinking_tokens += self.thinking_tokens

        self.peak_prompt_tokens = max(self.peak_prompt_tokens, self.prompt_tokens)
        self.peak_output_tokens = max(self.peak_output_tokens, self.output_tokens)
        self.peak_total_used = max(self.peak_total_used, self.total_used)
        self.peak_thinking_tokens = max(self.peak_thinking_tokens, self.thinking_tokens)

        if self.total_used > self.actual_max_context:
            self.has_overflowed = True

    def reset(self) -> None:
        """Сбросить текущие значения (пики сохраняются)"""
        self.prompt_tokens = 0
        self.output_tokens = 0
        self.thinking_tokens = 0
        self.cumulative_thinking_tokens = 0

    def reset_all(self) -> None:
        """Полный сброс, включая пики и флаг переполнения"""
        self.reset()
        self.peak_prompt_tokens = 0
        self.peak_output_tokens = 0
        self.peak_total_used = 0
        self.peak_thinking_tokens = 0
        self.has_overflowed = False

    def summary(self) -> str:
        """Однострочная сводка по последнему ответу"""
        overflow = " OVERFLOW!" if self.has_overflowed else ""
        thinking = ""
        if self.thinking_tokens > 0:
            thinking = f" thinking={self.thinking_tokens} (cumul={self.cumulative_thinking_tokens})"
        elif self.cumulative_thinking_tokens > 0:
            thinking = f" thinking=0 (cumul={self.cumulative_thinking_tokens})"
        return (
            f"Context: {self.total_used}/{self.max_context} ({self.usage_percent:.1f}%) "
            f"prompt={self.prompt_tokens} output={self.output_tokens}{thinking}{overflow}"
        )

    def peak_summary(self) -> str:
        """Однострочная сводка по пиковым значениям"""
        overflow = " OVERFLOW DETECTED!" if self.has_overflowed else ""
        thinking = ""
        if self.cumulative_thinking_tokens > 0:
            thinking = f" thinking: peak={self.peak_thinking_tokens} total={self.cumulative_thinking_tokens}"
        return (
            f"Peak: {self.peak_total_used}/{self.max_context} "
            f"({self.peak_usage_percent:.1f}%){thinking}{overflow}"
        )
