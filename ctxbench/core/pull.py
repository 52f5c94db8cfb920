"""
PullManager - загрузка моделей на сервер с повторами

Двухфазная политика повторов как явный конечный автомат:

    QUICK (50 попыток по 2s)  ->  SLOW (50 попыток по 30s)  ->  FAILED

- В фазе QUICK ловятся короткие сбои сети и смена IP
- В фазе SLOW пережидаются лимиты реестра; для hf.co/ моделей задержка
  берётся из подсказки сброса лимита (t=N): min(N + 5, 300) секунд
- Лимит hf.co/ в фазе QUICK тоже повторяется через 2s: смена IP часто
  снимает его раньше сброса
- Ошибки "модель не найдена" не повторяются: попытки не расходуются
- Если за попытку хотя бы один слой скачан на 99% и больше, счётчик
  попыток текущей фазы обнуляется
"""

import os
import re
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Callable, Dict, Any

import requests

from ..clients.ollama import OllamaClient


logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("file does not exist", "not found", "does not exist")
RATE_LIMIT_MARKERS = ("429", "rate limit")
HF_PREFIX = "hf.co/"
HF_WHOAMI_URL = "https://huggingface.co/api/whoami"
LAYER_DONE_RATIO = 0.99

_RESET_HINT = re.compile(r"t=(\d+)")


class PullPhase(str, Enum):
    QUICK = "quick"
    SLOW = "slow"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PullAttempt:
    """Итог одной попытки загрузки"""
    success: bool
    error: Optional[str] = None
    layers_completed: int = 0


@dataclass
class PullResult:
    """Итог загрузки модели"""
    model: str
    success: bool
    phase: PullPhase
    retries: int = 0
    error: Optional[str] = None


def is_not_found_error(message: Optional[str]) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in NOT_FOUND_MARKERS)


def is_rate_limit_error(message: Optional[str]) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def parse_reset_hint(text: Optional[str]) -> Optional[int]:
    """Секунды до сброса лимита из подсказки вида t=N"""
    match = _RESET_HINT.search(text or "")
    if match:
        seconds = int(match.group(1))
        return seconds if seconds > 0 else None
    return None


def hf_rate_limit_reset() -> Optional[int]:
    """Спросить у Hugging Face, когда сбросится лимит (нужен HF_TOKEN)"""
    token = os.getenv("HF_TOKEN")
    if not token:
        return None
    try:
        response = requests.get(HF_WHOAMI_URL, headers={"Authorization": f"Bearer {token}"}, timeout=10)
    except requests.exceptions.RequestException as e:
        logger.debug(f"Не удалось узнать лимит Hugging Face: {e}")
        return None
    return parse_reset_hint(response.headers.get("RateLimit"))


class PullManager:
    """
    Загрузка модели с двухфазными повторами

    Example:
        manager = PullManager.from_settings(client, settings)
        result = manager.pull("hf.co/unsloth/Qwen3-8B-GGUF:Q4_K_M")
    """

    def __init__(
        self,
        client: OllamaClient,
        quick_attempts: int = 50,
        quick_delay: float = 2.0,
        slow_attempts: int = 50,
        slow_delay: float = 30.0,
        max_rate_limit_delay: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
        reset_probe: Callable[[], Optional[int]] = hf_rate_limit_reset,
        on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.client = client
        self.quick_attempts = quick_attempts
        self.quick_delay = quick_delay
        self.slow_attempts = slow_attempts
        self.slow_delay = slow_delay
        self.max_rate_limit_delay = max_rate_limit_delay
        self._sleep = sleep
        self._reset_probe = reset_probe
        self.on_progress = on_progress

    @classmethod
    def from_settings(cls, client: OllamaClient, settings, **kwargs) -> "PullManager":
        return cls(
            client,
            quick_attempts=settings.pull.quick_attempts,
            quick_delay=settings.pull.quick_delay,
            slow_attempts=settings.pull.slow_attempts,
            slow_delay=settings.pull.slow_delay,
            max_rate_limit_delay=settings.pull.max_rate_limit_delay,
            **kwargs,
        )

    # =========================================================================
    # Публичный API
    # =========================================================================

    def pull(self, model: str) -> PullResult:
        """Загрузить модель; ошибки превращаются в неуспешный PullResult"""
        phase = PullPhase.QUICK
        attempt = 0
        retries = 0
        last_error: Optional[str] = None
        is_hf = model.lower().startswith(HF_PREFIX)
        hf_tip_shown = False

        logger.info(f"Загрузка модели: {model}")

        while phase in (PullPhase.QUICK, PullPhase.SLOW):
            outcome = self._attempt(model)
            if outcome.success:
                logger.info(f"Модель загружена: {model}")
                return PullResult(model=model, success=True, phase=PullPhase.DONE, retries=retries)

            last_error = outcome.error
            logger.warning(f"Ошибка загрузки {model} ({phase.value}, попытка {attempt + 1}): {last_error}")

            if is_not_found_error(last_error):
                logger.error(f"Модели {model} нет в реестре, повторов не будет")
                return PullResult(model=model, success=False, phase=PullPhase.FAILED, retries=retries, error=last_error)

            # Прогресс за попытку: счётчик фазы начинается заново
            if outcome.layers_completed > 0:
                logger.info(f"Скачано слоёв: {outcome.layers_completed}, счётчик попыток сброшен")
                attempt = 0
            else:
                attempt += 1

            limit = self.quick_attempts if phase == PullPhase.QUICK else self.slow_attempts
            if attempt >= limit:
                if phase == PullPhase.QUICK:
                    logger.warning("Быстрые повторы исчерпаны, переход к медленным")
                    phase = PullPhase.SLOW
                    attempt = 0
                    continue
                phase = PullPhase.FAILED
                break

            rate_limited = is_rate_limit_error(last_error)
            if rate_limited and is_hf and not hf_tip_shown:
                hf_tip_shown = True
                if not os.getenv("HF_TOKEN"):
                    logger.warning("Задайте HF_TOKEN, чтобы реже упираться в лимиты Hugging Face")

            delay = self.retry_delay(phase, last_error, is_hf)
            retries += 1
            self._sleep(delay)

        logger.error(f"Не удалось загрузить {model}: повторы исчерпаны ({last_error})")
        return PullResult(model=model, success=False, phase=PullPhase.FAILED, retries=retries, error=last_error)

    def retry_delay(self, phase: PullPhase, error: Optional[str], is_hf: bool) -> float:
        """Задержка перед следующей попыткой"""
        rate_limited = is_rate_limit_error(error)

        if phase == PullPhase.QUICK:
            if rate_limited and not is_hf:
                return self.slow_delay
            return self.quick_delay

        if rate_limited and is_hf:
            reset = parse_reset_hint(error) or self._reset_probe()
            if reset:
                return min(reset + 5, self.max_rate_limit_delay)
        return self.slow_delay

    # =========================================================================
    # Приватные методы
    # =========================================================================

    def _attempt(self, model: str) -> PullAttempt:
        """Одна попытка: прочитать поток прогресса до конца или до ошибки"""
        layers_completed = 0
        digest: Optional[str] = None
        completed = 0
        total = 0

        try:
            for message in self.client.pull_stream(model):
                if message.get("error"):
                    if digest and total and completed >= total * LAYER_DONE_RATIO:
                        layers_completed += 1
                    return PullAttempt(False, str(message["error"]), layers_completed)

                new_digest = message.get("digest")
                if new_digest and new_digest != digest:
                    if digest and total and completed >= total * LAYER_DONE_RATIO:
                        layers_completed += 1
                    digest = new_digest
                    completed = 0
                    total = 0

                if "total" in message:
                    total = message.get("total") or 0
                if "completed" in message:
                    completed = message.get("completed") or 0

                if self.on_progress is not None:
                    self.on_progress(message)

                if message.get("status") == "success":
                    return PullAttempt(True)

        except requests.exceptions.RequestException as e:
            return PullAttempt(False, str(e), layers_completed)

        return PullAttempt(False, "pull stream ended without success", layers_completed)
