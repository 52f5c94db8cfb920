"""
Тесты хранилища результатов: совместимость, резервные копии, восстановление
"""

import json
import tempfile
import unittest
from pathlib import Path

from ctxbench.core.judgment import parse_verdict
from ctxbench.core.results_store import (
    ResultsStore,
    cleanup_results,
    recover_json,
    recover_results,
    recovery_candidates,
)
from ctxbench.errors import IncompatibleResultsError, RecoveryError
from ctxbench.schemas.results import (
    CategoryResult,
    QuantResult,
    ResultsFile,
    SubCategoryResult,
    TestOptions,
    ToolUsage,
)
from tests.mocks import (
    logprobs,
    make_category_result,
    make_question_result,
    make_results_file,
    make_suite,
    make_tag_result,
)


DIGEST = "sha256:" + "cd" * 32
OTHER_DIGEST = "sha256:" + "ef" * 32

TRUNCATED = '{"test_suite_name": "ctxbench", "model_name": "qwen3", "results": [{"tag": "qwen3:q4_K_M"},\n  '


def _tag(name="qwen3:q4_K_M", score=100.0):
    return make_tag_result(name, [
        make_category_result("2k", 2048, [make_question_result(1, score=score)]),
    ])


def _rich_results():
    """Два тега со всеми видами вложенности: подкатегории, инструменты, токены, вердикты"""
    first = make_question_result(1, answer="Rusty", score=100.0, judged="YES", tokens=logprobs(("Rus", -0.1), ("ty", -0.2)))
    first.judgment = parse_verdict('{"Answer": "YES", "Reason": "name matches"}')
    first.tools_used = [ToolUsage(tool_name="calculator", call_count=1, arguments_json='{"expression": "2+2"}', result="4")]
    second = make_question_result(2, answer="null", score=0.0, judged="NO", eval_speed=12.5)

    old = SubCategoryResult(sub_category="Old", question_results=[make_question_result(3, score=100.0)])
    new = SubCategoryResult(sub_category="New", question_results=[make_question_result(4, answer="true")])
    category_4k = CategoryResult(category="4k", target_context_length=4096, sub_category_results=[old, new], is_complete=True)
    category_4k.recalculate()

    base = make_tag_result("qwen3:q8_0", [make_category_result("2k", 2048, [first, second]), category_4k], is_base=True)
    quant = make_tag_result("qwen3:q4_K_M", [make_category_result("2k", 2048, [make_question_result(1, score=100.0)], complete=False)])
    quant.test_options = TestOptions(temperature=0.1, extra={"num_batch": 512})
    return make_results_file([base, quant])


def _offsets_outside_strings(text):
    """Длины префиксов, которые не заканчиваются внутри строки"""
    in_string = escaped = False
    for i, ch in enumerate(text):
        if not in_string:
            yield i
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True


class TestRecoverJson(unittest.TestCase):

    def test_closes_brackets_and_drops_trailing_comma(self):
        outcome = recover_json(TRUNCATED)
        self.assertTrue(outcome.was_modified)
        self.assertEqual(outcome.closed_arrays, 1)
        self.assertEqual(outcome.closed_objects, 1)

        data = json.loads(outcome.text)
        self.assertEqual(data["results"][0]["tag"], "qwen3:q4_K_M")

    def test_brackets_inside_strings_ignored(self):
        outcome = recover_json('{"answer": "a [b] {c')
        self.assertEqual(outcome.closed_objects, 1)
        self.assertEqual(outcome.closed_arrays, 0)
        self.assertEqual(json.loads(outcome.text), {})

    def test_valid_json_unchanged(self):
        outcome = recover_json('{"a": [1, 2]}')
        self.assertFalse(outcome.was_modified)
        self.assertEqual(outcome.text, '{"a": [1, 2]}')

    def test_balanced_json_keeps_trailing_whitespace(self):
        outcome = recover_json('{"a": [1, 2]}\n\n')
        self.assertFalse(outcome.was_modified)
        self.assertEqual(outcome.text, '{"a": [1, 2]}\n\n')

    def test_dangling_key_and_colon_dropped(self):
        for text in ('{"a": 1, "results"', '{"a": 1, "results":', '{"a": 1, "results": '):
            with self.subTest(text=text):
                self.assertEqual(json.loads(recover_json(text).text), {"a": 1})

    def test_partial_literal_dropped(self):
        for text in ('{"a": [1, nul', '{"a": [1, tru', '{"a": [1, 1.', '{"a": [1, -'):
            with self.subTest(text=text):
                self.assertEqual(json.loads(recover_json(text).text), {"a": [1]})

    def test_candidates_drop_open_elements(self):
        texts = [o.text for o in recovery_candidates('{"results": [{"tag": "a"}, {"categ')]
        self.assertEqual([json.loads(t) for t in texts], [
            {"results": [{"tag": "a"}, {}]},
            {"results": [{"tag": "a"}]},
            {},
        ])

    def test_every_cut_recovers_tag_prefix(self):
        original = _rich_results()
        text = original.to_json()
        tags = [r.tag for r in original.results]
        start = text.index('"results"')

        for offset in _offsets_outside_strings(text):
            if offset < start:
                continue
            try:
                results, _ = recover_results(text[:offset])
            except RecoveryError as e:
                self.fail(f"offset {offset} ({text[max(0, offset - 20):offset]!r}): {e}")
            recovered = [r.tag for r in results.results]
            self.assertEqual(recovered, tags[:len(recovered)], f"offset {offset}")

    def test_cut_inside_unfinished_question(self):
        text = _rich_results().to_json()
        cut = text.index('"question_id": 2')
        results, outcome = recover_results(text[:cut])

        self.assertTrue(outcome.was_modified)
        questions = results.results[0].category_results[0].question_results
        self.assertEqual([q.question_id for q in questions], [1])


class TestCleanup(unittest.TestCase):

    def test_removes_nameless_tags(self):
        results = make_results_file([_tag(), QuantResult(tag=" ")])
        fixes = cleanup_results(results)
        self.assertGreaterEqual(fixes, 1)
        self.assertEqual([r.tag for r in results.results], ["qwen3:q4_K_M"])

    def test_recalculates_drifted_scores(self):
        results = make_results_file([_tag()])
        results.results[0].category_results[0].score = 12.0
        results.results[0].overall_score = 12.0

        self.assertGreater(cleanup_results(results), 0)
        self.assertEqual(results.results[0].category_results[0].score, 100.0)
        self.assertEqual(results.results[0].overall_score, 100.0)

    def test_consistent_file_needs_no_fixes(self):
        self.assertEqual(cleanup_results(make_results_file([_tag()])), 0)


class TestResultsStore(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = Path(self.tmp.name) / "qwen3.ctxbench.json"
        self.store = ResultsStore(self.path)
        self.suite = make_suite()

    def test_create_save_load(self):
        self.assertFalse(self.store.exists())
        results = self.store.load_or_create(self.suite, DIGEST, "qwen3", suite_name="ctxbench")
        self.assertEqual(results.test_suite_digest, DIGEST)
        self.assertEqual(results.max_context_length, 4096)

        results.results.append(_tag())
        self.store.save(results)

        loaded = self.store.load_or_create(self.suite, DIGEST, "qwen3")
        self.assertEqual(loaded.results[0].tag, "qwen3:q4_K_M")
        self.assertEqual(loaded.results[0].overall_score, 100.0)

    def test_judged_file_round_trip(self):
        original = _rich_results()
        self.store.save(original)

        loaded = self.store.load()
        self.assertEqual(loaded.model_dump(), original.model_dump())
        judgment = loaded.results[0].category_results[0].question_results[0].judgment
        self.assertEqual(judgment.raw_response, '{"Answer": "YES", "Reason": "name matches"}')
        self.assertEqual(ResultsFile.model_validate_json(original.to_json()).model_dump(), original.model_dump())

    def test_digest_mismatch_refused(self):
        self.store.save(make_results_file([_tag()], digest=DIGEST))

        with self.assertRaises(IncompatibleResultsError) as ctx:
            self.store.load_or_create(self.suite, OTHER_DIGEST, "qwen3")
        self.assertEqual(ctx.exception.field, "test_suite_digest")

    def test_digest_mismatch_forced(self):
        self.store.save(make_results_file([_tag()], digest=DIGEST))
        results = self.store.load_or_create(self.suite, OTHER_DIGEST, "qwen3", force=True)
        self.assertEqual(results.test_suite_digest, OTHER_DIGEST)
        self.assertEqual(len(results.results), 1)

    def test_model_mismatch_refused(self):
        self.store.save(make_results_file([_tag()], model_name="llama3"))
        with self.assertRaises(IncompatibleResultsError) as ctx:
            self.store.load_or_create(self.suite, DIGEST, "qwen3")
        self.assertEqual(ctx.exception.field, "model_name")

    def test_digest_prefix_ignored(self):
        self.store.save(make_results_file([_tag()], digest="cd" * 32))
        results = self.store.load_or_create(self.suite, "SHA256:" + "CD" * 32, "qwen3")
        self.assertEqual(len(results.results), 1)

    def test_backup_and_restore(self):
        first = make_results_file([_tag()])
        self.store.save(first)
        self.assertFalse(self.store.backup_path.exists())

        second = make_results_file([_tag(), _tag("qwen3:q8_0")])
        self.store.save(second)
        self.assertTrue(self.store.backup_path.exists())
        self.assertEqual(len(self.store.load().results), 2)

        size = self.store.restore_backup()
        self.assertGreater(size, 0)
        self.assertEqual(len(self.store.load().results), 1)

    def test_restore_without_backup(self):
        with self.assertRaises(FileNotFoundError):
            self.store.restore_backup()

    def test_load_recovers_truncated_file(self):
        self.path.write_text(TRUNCATED, encoding="utf-8")
        results = self.store.load()
        self.assertEqual(results.results[0].tag, "qwen3:q4_K_M")

    def test_load_drops_unfinished_tag(self):
        text = _rich_results().to_json()
        self.path.write_text(text[:text.index('"tag": "qwen3:q4_K_M"')], encoding="utf-8")

        results = self.store.load()
        self.assertEqual([r.tag for r in results.results], ["qwen3:q8_0"])

    def test_load_unrecoverable_keeps_partial(self):
        self.path.write_text('{"model_name": "qwen3", "results": 42}', encoding="utf-8")
        with self.assertRaises(RecoveryError) as ctx:
            self.store.load()
        self.assertTrue(Path(ctx.exception.partial_path).exists())

    def test_repair_clean_file(self):
        self.store.save(make_results_file([_tag()]))
        outcome = self.store.repair()
        self.assertTrue(outcome.success)
        self.assertIsNone(outcome.output_path)
        self.assertFalse(self.store.fixed_path().exists())

    def test_repair_truncated_file(self):
        self.path.write_text(TRUNCATED, encoding="utf-8")
        outcome = self.store.repair()

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.output_path, self.path.with_name("qwen3.ctxbench.fixed.json"))
        self.assertTrue(outcome.recovery.was_modified)
        # Исходный файл не трогается
        self.assertEqual(self.path.read_text(encoding="utf-8"), TRUNCATED)

    def test_repair_missing_file(self):
        outcome = self.store.repair()
        self.assertFalse(outcome.success)

    def test_fixed_path_of_fixed_file(self):
        store = ResultsStore(Path(self.tmp.name) / "qwen3.fixed.json")
        self.assertTrue(store.fixed_path().name.startswith("qwen3.fixed_"))


if __name__ == "__main__":
    unittest.main()
