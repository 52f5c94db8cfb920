"""
Тесты оценки относительно базового тега, статистики и отчётов
"""

import json
import math
import tempfile
import unittest
from pathlib import Path

from ctxbench.scoring.engine import (
    lcs_length,
    length_consistency,
    logprobs_divergence,
    perplexity,
    perplexity_score,
    score_question,
    score_results,
    score_tag,
    token_similarity,
)
from ctxbench.schemas.results import Judgment
from ctxbench.scoring.report import ReportGenerator, generate_report
from ctxbench.scoring.statistics import (
    calculate_ci_95,
    calculate_mean,
    calculate_median,
    category_statistics,
    format_size,
    score_rating,
    summarize_results,
)
from ctxbench.scoring.charts import check_matplotlib_available, generate_charts
from tests.mocks import (
    logprobs,
    make_category_result,
    make_question_result,
    make_results_file,
    make_tag_result,
)


def _pair(base_tokens, candidate_tokens):
    return (
        make_question_result(1, tokens=base_tokens),
        make_question_result(1, tokens=candidate_tokens),
    )


class TestMetrics(unittest.TestCase):

    def test_lcs(self):
        self.assertEqual(lcs_length("ABCBDAB", "BDCABA"), 4)
        self.assertEqual(lcs_length([], ["a"]), 0)
        self.assertEqual(lcs_length([], []), 0)
        self.assertEqual(lcs_length("", ""), 0)

    def test_lcs_symmetric(self):
        pairs = [
            ("ABCBDAB", "BDCABA"),
            (["The", "fox", "runs"], ["A", "fox", "runs", "fast"]),
            ("AAB", "ABA"),
            ([], ["a"]),
        ]
        for a, b in pairs:
            with self.subTest(a=a, b=b):
                self.assertEqual(lcs_length(a, b), lcs_length(b, a))

    def test_identical_answers_score_100(self):
        tokens = logprobs(("The", -0.1), ("fox", -0.3), ("runs", -0.2))
        base, candidate = _pair(tokens, list(tokens))

        score = score_question(base, candidate)
        self.assertAlmostEqual(score.token_similarity_score, 100.0)
        self.assertAlmostEqual(score.logprobs_divergence_score, 100.0)
        self.assertAlmostEqual(score.length_consistency_score, 100.0)
        self.assertAlmostEqual(score.perplexity_score, 100.0)
        self.assertAlmostEqual(score.overall_confidence_score, 100.0)
        self.assertIsNone(score.judgment_score)

    def test_empty_tokens_score_zero(self):
        base, candidate = _pair(logprobs(("a", -0.1)), [])
        self.assertEqual(token_similarity(base, candidate), 0.0)
        self.assertEqual(logprobs_divergence(base, candidate), 0.0)
        self.assertEqual(perplexity_score(base, candidate), 0.0)

    def test_perplexity(self):
        self.assertEqual(perplexity([]), 0.0)
        self.assertAlmostEqual(perplexity(logprobs(("a", -1.0), ("b", -1.0))), math.e)

    def test_divergence_formula(self):
        base, candidate = _pair(logprobs(("a", 0.0)), logprobs(("a", math.log(0.5))))
        # |1.0 - 0.5| * 2 = 1
        self.assertAlmostEqual(logprobs_divergence(base, candidate), 100.0 * math.exp(-1.0))

    def test_length_consistency_double_length(self):
        base, candidate = _pair(logprobs(("a", -0.1)), logprobs(("a", -0.1), ("b", -0.1)))
        self.assertAlmostEqual(length_consistency(base, candidate), 100.0 * math.exp(-2.0))

    def test_token_similarity_capped(self):
        base, candidate = _pair(logprobs(("a", -0.1), ("b", -0.1)), logprobs(("a", -0.1), ("c", -0.1)))
        self.assertAlmostEqual(token_similarity(base, candidate), 50.0)

    def test_judgment_score_carried(self):
        tokens = logprobs(("a", -0.1))
        base = make_question_result(1, tokens=tokens)
        candidate = make_question_result(1, tokens=tokens, score=100.0, judged="YES")
        self.assertEqual(score_question(base, candidate).judgment_score, 100.0)


class TestScoreTag(unittest.TestCase):

    def _results(self, judged=False):
        tokens = logprobs(("Rusty", -0.05))
        base = make_tag_result("qwen3:fp16", [
            make_category_result("2k", 2048, [
                make_question_result(1, tokens=tokens, eval_speed=40.0, prompt_speed=400.0),
                make_question_result(2, tokens=tokens, eval_speed=40.0, prompt_speed=400.0),
            ]),
        ], is_base=True)
        judged_answer = "YES" if judged else None
        candidate = make_tag_result("qwen3:q4_K_M", [
            make_category_result("2k", 2048, [
                make_question_result(1, tokens=tokens, eval_speed=80.0, prompt_speed=800.0,
                                     judged=judged_answer, score=100.0 if judged else 0.0),
                make_question_result(2, tokens=tokens, eval_speed=80.0, prompt_speed=800.0,
                                     judged="NO" if judged else None),
            ]),
        ])
        return make_results_file([base, candidate])

    def test_metrics_only(self):
        report = score_results(self._results())
        self.assertEqual(report.base_tag, "qwen3:fp16")
        self.assertEqual(len(report.tag_scores), 1)

        tag = report.tag_scores[0]
        self.assertFalse(tag.has_judgment_scoring)
        self.assertAlmostEqual(tag.final_score, 100.0)
        self.assertAlmostEqual(tag.category_scores["2k"], 100.0)
        self.assertAlmostEqual(tag.eval_performance_percent, 200.0)
        self.assertAlmostEqual(tag.prompt_performance_percent, 200.0)

    def test_judgment_blends_half_and_half(self):
        report = score_results(self._results(judged=True))
        tag = report.tag_scores[0]
        self.assertTrue(tag.has_judgment_scoring)
        self.assertAlmostEqual(tag.average_judgment_score, 50.0)
        self.assertAlmostEqual(tag.final_score, 75.0)

    def test_partial_judgment_uses_metrics(self):
        results = self._results()
        questions = results.results[1].category_results[0].question_results
        questions[0].judgment = Judgment(answer="YES")
        questions[1].judgment = None
        tag = score_results(results).tag_scores[0]
        self.assertFalse(tag.has_judgment_scoring)
        self.assertAlmostEqual(tag.final_score, tag.total_confidence_score)

    def test_unpaired_questions_skipped(self):
        results = self._results()
        results.results[1].category_results[0].question_results.pop()
        tag = score_tag(results.results[0], results.results[1])
        self.assertEqual(len(tag.question_scores), 1)

    def test_explicit_base_and_missing_base(self):
        results = self._results()
        report = score_results(results, "qwen3:q4_K_M")
        self.assertEqual(report.tag_scores[0].tag, "qwen3:fp16")

        results.results[0].is_base = False
        with self.assertRaises(ValueError):
            score_results(results)
        with self.assertRaises(ValueError):
            score_results(results, "qwen3:missing")


class TestStatistics(unittest.TestCase):

    def test_basic_functions(self):
        self.assertEqual(calculate_mean([]), 0.0)
        self.assertEqual(calculate_mean([1, 2, 3]), 2.0)
        self.assertEqual(calculate_median([3, 1, 2, 4]), 2.5)
        low, high = calculate_ci_95([50.0, 60.0, 70.0])
        self.assertLess(low, 60.0)
        self.assertGreater(high, 60.0)

    def test_format_size(self):
        self.assertIn("GB", format_size(5 * 1024 ** 3))

    def test_rating_is_monotonic(self):
        self.assertNotEqual(score_rating(95.0), score_rating(10.0))

    def test_summary_sorted_by_score(self):
        weak = make_tag_result("qwen3:q2_K", [
            make_category_result("2k", 2048, [make_question_result(1, score=0.0)]),
        ])
        strong = make_tag_result("qwen3:q8_0", [
            make_category_result("2k", 2048, [make_question_result(1, score=100.0)]),
            make_category_result("4k", 4096, [make_question_result(2, score=100.0)]),
        ])
        summary = summarize_results(make_results_file([weak, strong]))

        self.assertEqual([t.tag for t in summary.tags], ["qwen3:q8_0", "qwen3:q2_K"])
        self.assertEqual(summary.categories, ["2k", "4k"])
        self.assertEqual(summary.tags[0].category_scores["4k"], 100.0)

        stats = category_statistics(summary)
        self.assertEqual(stats["2k"].average, 50.0)
        self.assertEqual(stats["2k"].min, 0.0)
        self.assertEqual(stats["4k"].scores, [100.0])


class TestReports(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        tag = make_tag_result("qwen3:q4_K_M", [
            make_category_result("2k", 2048, [make_question_result(1, score=100.0)]),
        ], size=4 * 1024 ** 3)
        self.summary = summarize_results(make_results_file([tag]))

    def test_markdown(self):
        generator = ReportGenerator(self.tmp.name)
        text = generator.render_markdown(self.summary)
        self.assertIn("# qwen3", text)
        self.assertIn("| 1 | qwen3:q4_K_M |", text)
        self.assertIn("## Категории", text)

    def test_html_escapes(self):
        self.summary.tags[0].tag = "<b>x</b>"
        generator = ReportGenerator(self.tmp.name)
        page = generator.render_html(self.summary)
        self.assertIn("&lt;b&gt;x&lt;/b&gt;", page)
        self.assertNotIn("{{ tag_rows }}", page)

    def test_generate_report(self):
        with tempfile.TemporaryDirectory() as tmp:
            paths = generate_report(self.summary, tmp, ["json", "md", "html"])
            self.assertEqual(set(paths), {"json", "md", "html"})
            data = json.loads(Path(paths["json"]).read_text(encoding="utf-8"))
            self.assertEqual(data["summary"]["model_name"], "qwen3")
            self.assertNotIn("scoring", data)

    @unittest.skipUnless(check_matplotlib_available(), "matplotlib не установлен")
    def test_charts(self):
        with tempfile.TemporaryDirectory() as tmp:
            charts = generate_charts(self.summary, tmp)
            self.assertIn("categories", charts)
            self.assertIn("score_vs_size", charts)
            # Тепловая карта только для двух и более категорий
            self.assertNotIn("heatmap", charts)
            self.assertTrue(charts["categories"][0].exists())


if __name__ == "__main__":
    unittest.main()
