"""
Тесты оценки токенов, учёта контекста и калибровки
"""

import json
import tempfile
import unittest
from pathlib import Path

from ctxbench.core.calibration import CalibrationRecorder, calibration_file_name, target_fill_percent
from ctxbench.core.context_tracker import ContextTracker
from ctxbench.utils.tokenizer import (
    DEFAULT_CHARS_PER_TOKEN,
    chars_per_token_for_context,
    estimate_tokens,
    estimate_conversation_tokens,
    token_summary,
)


class TestTokenizer(unittest.TestCase):

    def test_empty_text_is_zero(self):
        self.assertEqual(estimate_tokens(""), 0)
        self.assertEqual(estimate_tokens(None), 0)

    def test_rounds_up(self):
        # 10 / 4.2 = 2.38
        self.assertEqual(estimate_tokens("a" * 10), 3)
        self.assertEqual(estimate_tokens("a" * 42), 10)

    def test_custom_ratio(self):
        self.assertEqual(estimate_tokens("abcd", chars_per_token=2.0), 2)

    def test_context_dependent_ratio(self):
        self.assertEqual(chars_per_token_for_context(2048), 4.0)
        self.assertEqual(chars_per_token_for_context(16384), 4.35)
        self.assertEqual(chars_per_token_for_context(10 ** 7), 4.7)

    def test_conversation_adds_role_overhead(self):
        total = estimate_conversation_tokens([("user", "a" * 42), ("assistant", "")])
        # BOS + (10 + 4) + (0 + 4)
        self.assertEqual(total, 19)

    def test_token_summary_overflow(self):
        self.assertIn("[OK]", token_summary("word " * 10, 100))
        self.assertIn("[OVERFLOW]", token_summary("word " * 200, 10))


class TestContextTracker(unittest.TestCase):

    def test_accumulates_peaks(self):
        tracker = ContextTracker(4096)
        tracker.update_from_response(1000, 100, 20)
        tracker.update_from_response(800, 50)

        self.assertEqual(tracker.total_used, 850)
        self.assertEqual(tracker.peak_total_used, 1100)
        self.assertEqual(tracker.peak_thinking_tokens, 20)
        self.assertEqual(tracker.cumulative_thinking_tokens, 20)
        self.assertFalse(tracker.has_overflowed)

    def test_overflow_only_beyond_hard_ceiling(self):
        tracker = ContextTracker(4096, actual_max_context=6144)
        tracker.update_from_response(5000, 500)
        self.assertFalse(tracker.has_overflowed)
        self.assertGreater(tracker.usage_percent, 100.0)

        tracker.update_from_response(6000, 200)
        self.assertTrue(tracker.has_overflowed)

    def test_ceiling_defaults_to_target(self):
        tracker = ContextTracker(100)
        tracker.update_from_response(90, 11)
        self.assertTrue(tracker.has_overflowed)

    def test_none_counts_are_zero(self):
        tracker = ContextTracker(1000)
        tracker.update_from_response(None, None, None)
        self.assertEqual(tracker.total_used, 0)

    def test_summaries(self):
        tracker = ContextTracker(1000)
        tracker.update_from_response(400, 100, 30)
        self.assertIn("500/1000", tracker.summary())
        self.assertIn("thinking=30", tracker.summary())
        self.assertIn("Peak: 500/1000 (50.0%)", tracker.peak_summary())

    def test_reset_all(self):
        tracker = ContextTracker(100)
        tracker.update_from_response(200, 10)
        tracker.reset_all()
        self.assertEqual(tracker.peak_total_used, 0)
        self.assertFalse(tracker.has_overflowed)


class TestCalibration(unittest.TestCase):

    def test_file_name_is_sanitized(self):
        self.assertEqual(
            calibration_file_name("hf.co/org/model", "hf.co/org/model:Q4"),
            "calibration_hf.co_org_model_hf.co_org_model_Q4.json",
        )

    def test_fill_percent(self):
        self.assertEqual(target_fill_percent(4096), 0.90)
        self.assertEqual(target_fill_percent(8192), 0.95)

    def test_step_without_category_is_ignored(self):
        recorder = CalibrationRecorder("m")
        self.assertIsNone(recorder.track_step("Context", "context", "text", 10, 0))

    def test_steps_and_summary(self):
        recorder = CalibrationRecorder("m", "0.4.0")
        recorder.start_category("2k", 2048)

        # 400 символов / 4.0 = 100 токенов оценки
        first = recorder.track_step("Context", "context", "x" * 400, actual_prompt=110, actual_output=0)
        self.assertEqual(first.estimated_tokens, 100)
        self.assertEqual(first.delta, 10)
        self.assertAlmostEqual(first.delta_percent, 10.0)

        second = recorder.track_step("Question1", "question", "y" * 40, actual_prompt=112, actual_output=5)
        self.assertEqual(second.cumulative_estimate, 110)
        self.assertTrue(first.text_preview.endswith("..."))

        summary = recorder.finish_category()
        self.assertEqual(summary.total_chars, 440)
        self.assertEqual(summary.final_actual_prompt_tokens, 112)
        self.assertAlmostEqual(summary.recommended_chars_per_token, 440 / 112)
        self.assertTrue(summary.within_tolerance)

    def test_zero_actual_tokens_gives_zero_ratio(self):
        recorder = CalibrationRecorder("m")
        recorder.start_category("2k", 2048)
        recorder.track_step("Context", "context", "abc", actual_prompt=0, actual_output=0)
        summary = recorder.finish_category()
        self.assertEqual(summary.recommended_chars_per_token, 0.0)

    def test_counters_carry_across_categories(self):
        recorder = CalibrationRecorder("m")
        recorder.start_category("2k", 2048)
        recorder.track_step("Context", "context", "a" * 100, 30, 0)
        recorder.start_category("4k", 4096)
        step = recorder.track_step("Context", "context", "b" * 100, 60, 0)
        self.assertEqual(recorder.cumulative_chars, 200)
        self.assertEqual(step.cumulative_estimate, 50)

    def test_save(self):
        recorder = CalibrationRecorder("m")
        recorder.start_category("2k", 2048)
        recorder.track_step("Context", "context", "a" * 100, 30, 0)
        recorder.finish_category()

        with tempfile.TemporaryDirectory() as tmp:
            path = recorder.save(Path(tmp) / "cal.json")
            data = json.loads(path.read_text(encoding="utf-8"))

        self.assertEqual(data["model_name"], "m")
        self.assertEqual(data["chars_per_token_ratio"], DEFAULT_CHARS_PER_TOKEN)
        self.assertIn("2k", data["categories"])


if __name__ == "__main__":
    unittest.main()
