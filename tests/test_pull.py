"""
Тесты загрузки моделей с двухфазными повторами
"""

import unittest

import requests

from ctxbench.core.pull import (
    PullManager,
    PullPhase,
    is_not_found_error,
    is_rate_limit_error,
    parse_reset_hint,
)


class ScriptedPullClient:
    """Каждая попытка — список сообщений потока или исключение"""

    def __init__(self, attempts):
        self.attempts = list(attempts)
        self.calls = 0

    def pull_stream(self, model):
        self.calls += 1
        script = self.attempts.pop(0) if self.attempts else [{"error": "no more attempts"}]
        for message in script:
            if isinstance(message, Exception):
                raise message
            yield message


SUCCESS = [{"status": "pulling manifest"}, {"status": "success"}]


def _error(text):
    return [{"status": "pulling manifest"}, {"error": text}]


def _layer_then_error(digest):
    return [
        {"status": "downloading", "digest": digest, "total": 100, "completed": 50},
        {"status": "downloading", "digest": digest, "total": 100, "completed": 100},
        {"error": "connection reset by peer"},
    ]


class TestPullHelpers(unittest.TestCase):

    def test_error_classification(self):
        self.assertTrue(is_not_found_error("pull model manifest: file does not exist"))
        self.assertTrue(is_rate_limit_error("HTTP 429 Too Many Requests"))
        self.assertTrue(is_rate_limit_error("Rate limit exceeded"))
        self.assertFalse(is_rate_limit_error(None))

    def test_reset_hint(self):
        self.assertEqual(parse_reset_hint('"api";r=0;t=42'), 42)
        self.assertIsNone(parse_reset_hint("t=0"))
        self.assertIsNone(parse_reset_hint("nothing"))


class TestPullManager(unittest.TestCase):

    def setUp(self):
        self.sleeps = []

    def _manager(self, client, **kwargs):
        params = dict(
            quick_attempts=2,
            quick_delay=2.0,
            slow_attempts=2,
            slow_delay=30.0,
            max_rate_limit_delay=300.0,
            sleep=self.sleeps.append,
            reset_probe=lambda: None,
        )
        params.update(kwargs)
        return PullManager(client, **params)

    def test_success_first_try(self):
        progress = []
        client = ScriptedPullClient([SUCCESS])
        result = self._manager(client, on_progress=progress.append).pull("qwen3:8b")

        self.assertTrue(result.success)
        self.assertEqual(result.phase, PullPhase.DONE)
        self.assertEqual(result.retries, 0)
        self.assertEqual(progress[-1], {"status": "success"})

    def test_not_found_is_not_retried(self):
        client = ScriptedPullClient([_error("pull model manifest: file does not exist")])
        result = self._manager(client).pull("qwen3:missing")

        self.assertFalse(result.success)
        self.assertEqual(result.phase, PullPhase.FAILED)
        self.assertEqual(result.retries, 0)
        self.assertEqual(client.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_quick_then_slow_then_failed(self):
        client = ScriptedPullClient([_error("connection reset")] * 4)
        result = self._manager(client).pull("qwen3:8b")

        self.assertFalse(result.success)
        self.assertEqual(result.phase, PullPhase.FAILED)
        self.assertEqual(client.calls, 4)
        self.assertEqual(self.sleeps, [2.0, 30.0])
        self.assertEqual(result.retries, 2)
        self.assertEqual(result.error, "connection reset")

    def test_recovers_after_failure(self):
        client = ScriptedPullClient([_error("connection reset"), SUCCESS])
        result = self._manager(client).pull("qwen3:8b")

        self.assertTrue(result.success)
        self.assertEqual(result.retries, 1)
        self.assertEqual(self.sleeps, [2.0])

    def test_transport_exception_is_retried(self):
        broken = [{"status": "pulling manifest"}, requests.exceptions.ConnectionError("dns failure")]
        client = ScriptedPullClient([broken, SUCCESS])
        self.assertTrue(self._manager(client).pull("qwen3:8b").success)

    def test_completed_layer_resets_counter(self):
        client = ScriptedPullClient([
            _layer_then_error("sha256:a"),
            _layer_then_error("sha256:b"),
            _layer_then_error("sha256:c"),
            SUCCESS,
        ])
        result = self._manager(client).pull("qwen3:8b")

        self.assertTrue(result.success)
        # Счётчик сбрасывается, в медленную фазу не переходим
        self.assertEqual(self.sleeps, [2.0, 2.0, 2.0])

    def test_hf_rate_limit_quick_retries_first(self):
        client = ScriptedPullClient([_error("429 rate limit, t=12"), SUCCESS])
        result = self._manager(client).pull("hf.co/unsloth/Qwen3-8B-GGUF:Q4_K_M")

        self.assertTrue(result.success)
        self.assertEqual(self.sleeps, [2.0])

    def test_hf_rate_limit_uses_hint_in_slow_phase(self):
        client = ScriptedPullClient([_error("429 rate limit, t=12")] * 4 + [SUCCESS])
        result = self._manager(client, quick_attempts=3).pull("hf.co/unsloth/Qwen3-8B-GGUF:Q4_K_M")

        self.assertTrue(result.success)
        self.assertEqual(self.sleeps, [2.0, 2.0, 17])

    def test_registry_rate_limit_waits_slow_delay(self):
        client = ScriptedPullClient([_error("429 rate limit"), SUCCESS])
        self._manager(client).pull("qwen3:8b")
        self.assertEqual(self.sleeps, [30.0])


class TestRetryDelay(unittest.TestCase):

    def test_delays(self):
        manager = PullManager(None, quick_delay=2.0, slow_delay=30.0, reset_probe=lambda: 1000)

        self.assertEqual(manager.retry_delay(PullPhase.QUICK, "timeout", False), 2.0)
        self.assertEqual(manager.retry_delay(PullPhase.SLOW, "timeout", True), 30.0)
        self.assertEqual(manager.retry_delay(PullPhase.SLOW, "429 t=100", True), 105)
        # Подсказка из API, но не больше потолка
        self.assertEqual(manager.retry_delay(PullPhase.SLOW, "429", True), 300.0)

    def test_no_hint_falls_back_to_slow_delay(self):
        manager = PullManager(None, slow_delay=30.0, reset_probe=lambda: None)
        self.assertEqual(manager.retry_delay(PullPhase.SLOW, "rate limit", True), 30.0)


if __name__ == "__main__":
    unittest.main()
