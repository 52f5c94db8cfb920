"""
Тесты pre-flight проверок, инструментов, разбора тегов и облачного судьи
"""

import os
import unittest
from unittest.mock import Mock, patch

from ctxbench.clients.cloud import create_provider, parse_judge_spec
from ctxbench.core.preflight import (
    DEFAULT_MAX_CONTEXT,
    cached_preflight,
    category_fits_within_context,
    detect_thinking,
    fetch_model_info,
    max_context_from_show,
    new_preflight_result,
    resolve_context,
    run_tools_preflight,
)
from ctxbench.core.tags import expand_tags, full_tag_name, split_tags
from ctxbench.core.tools import execute, get_tool_definitions, supports_tools, tool_names
from ctxbench.errors import ContextResolutionError
from ctxbench.schemas.messages import ChatMessage, ChatResult, ToolCall
from tests.mocks import TOOLS_TEMPLATE, FakeOllamaClient, make_suite
from tests.mocks.ollama_mock import tool_call


class TestModelInfo(unittest.TestCase):

    def test_max_context_from_architecture_key(self):
        show = {"model_info": {"general.architecture": "qwen3", "qwen3.context_length": 40960}}
        self.assertEqual(max_context_from_show(show), 40960)

    def test_max_context_from_any_key(self):
        show = {"model_info": {"general.architecture": "x", "gemma3.context_length": 131072}}
        self.assertEqual(max_context_from_show(show), 131072)

    def test_max_context_default(self):
        self.assertEqual(max_context_from_show({}), DEFAULT_MAX_CONTEXT)
        self.assertEqual(max_context_from_show({}, default=8192), 8192)

    def test_fetch_model_info(self):
        client = FakeOllamaClient(["qwen3:8b"], max_context=40960)
        info = fetch_model_info(client, "qwen3:8b")

        self.assertEqual(info.family, "llama")
        self.assertEqual(info.quantization_level, "Q4_K_M")
        self.assertEqual(info.max_context, 40960)
        self.assertEqual(info.size, 4 * 1024 ** 3)
        self.assertEqual(info.digest, "ab" * 32)
        self.assertEqual(info.short_digest, "ab" * 6)

    def test_fetch_missing_model(self):
        self.assertIsNone(fetch_model_info(FakeOllamaClient(), "qwen3:8b"))


class TestThinking(unittest.TestCase):

    def test_detects_thinking_field(self):
        client = FakeOllamaClient(["qwen3:8b"])
        client.thinking = True
        self.assertTrue(detect_thinking(client, "qwen3:8b"))

    def test_plain_answer(self):
        self.assertFalse(detect_thinking(FakeOllamaClient(["llama3:8b"]), "llama3:8b"))


class TestContextResolution(unittest.TestCase):

    def setUp(self):
        self.suite = make_suite()

    def test_fits_with_margin(self):
        self.assertTrue(category_fits_within_context(4096, 4016))
        self.assertFalse(category_fits_within_context(4096, 3000))
        # 256k = 262144 при пределе модели 256000
        self.assertTrue(category_fits_within_context(262144, 256000))

    def test_suite_max_plus_overhead(self):
        resolution = resolve_context(self.suite, 32768, thinking=False)
        self.assertEqual(resolution.effective_max_context, 4096 + 2048)
        self.assertEqual(resolution.category_names, ["2k", "4k"])
        self.assertIsNone(resolution.category_limit)
        self.assertFalse(resolution.downgraded)

    def test_thinking_overhead(self):
        self.assertEqual(resolve_context(self.suite, 32768, thinking=True).effective_max_context, 8192)

    def test_overhead_skipped_when_it_does_not_fit(self):
        resolution = resolve_context(self.suite, 4096, thinking=True)
        self.assertEqual(resolution.effective_max_context, 4096)

    def test_limit_by_category(self):
        resolution = resolve_context(self.suite, 32768, thinking=False, limit="2K")
        self.assertEqual(resolution.category_names, ["2k"])
        self.assertEqual(resolution.category_limit, "2k")
        self.assertEqual(resolution.effective_max_context, 4096)

    def test_unknown_limit(self):
        with self.assertRaises(ContextResolutionError) as ctx:
            resolve_context(self.suite, 32768, thinking=False, limit="64k")
        self.assertIn("2k, 4k", str(ctx.exception))

    def test_auto_downgrade(self):
        resolution = resolve_context(self.suite, 3000, thinking=False)
        self.assertTrue(resolution.downgraded)
        self.assertEqual(resolution.category_limit, "2k")
        self.assertEqual(resolution.effective_max_context, 2048)
        self.assertEqual(resolution.category_names, ["2k"])

    def test_nothing_fits(self):
        with self.assertRaises(ContextResolutionError):
            resolve_context(self.suite, 1000, thinking=False)

    def test_cached_preflight(self):
        cached = new_preflight_result("sha256:" + "ab" * 32, False, 2048, 32768, 6144)
        self.assertIs(cached_preflight(cached, "AB" * 32), cached)
        self.assertIsNone(cached_preflight(cached, "cd" * 32))
        self.assertIsNone(cached_preflight(None, "ab" * 32))
        self.assertIsNone(cached_preflight(cached, None))


class WrongToolClient(FakeOllamaClient):

    def chat_stream(self, model, messages, options=None, think=None, tools=None, timeout=60):
        return tool_call("get_animal_weight", animal="tiger")


class TestTools(unittest.TestCase):

    def test_calculator_is_off_by_one(self):
        self.assertEqual(execute("magic_calculator", {"a": 5, "b": 3, "operation": "add"}), "9")
        self.assertEqual(execute("magic_calculator", {"a": "5", "b": "3", "operation": "subtract"}), "1")
        self.assertEqual(execute("magic_calculator", {"a": 4, "b": 2, "operation": "multiply"}), "9")
        self.assertEqual(execute("magic_calculator", {"a": 4, "b": 2, "operation": "divide"}), "1")
        self.assertTrue(execute("magic_calculator", {"a": 1, "b": 0, "operation": "divide"}).startswith("Error"))

    def test_lookup_tools(self):
        self.assertEqual(execute("get_animal_lifespan", {"animal": "Tiger"}), "15 years")
        self.assertEqual(execute("get_animal_weight", {"animal": "fox"}), "8 kg")
        self.assertEqual(execute("get_recipe_ingredients", {"recipe": "apple pie"}), "8 ingredients")
        self.assertEqual(execute("get_number_of_pies", {"fruit": "apple", "amount": 25}), "2")
        self.assertIn("not available", execute("get_animal_lifespan", {"animal": "dragon"}))

    def test_unknown_tool(self):
        self.assertEqual(execute("launch_rocket", {}), "Unknown tool: launch_rocket")

    def test_definitions(self):
        self.assertEqual(len(get_tool_definitions()), len(tool_names()))
        enabled = get_tool_definitions(["MAGIC_CALCULATOR"])
        self.assertEqual([t["function"]["name"] for t in enabled], ["magic_calculator"])

    def test_supports_tools(self):
        self.assertTrue(supports_tools(TOOLS_TEMPLATE))
        self.assertTrue(supports_tools("{% for call in message.tool_calls %}"))
        self.assertFalse(supports_tools("{{ .System }}{{ .Prompt }}"))
        self.assertFalse(supports_tools(None))

    def test_tools_preflight(self):
        self.assertTrue(run_tools_preflight(FakeOllamaClient(["qwen3:8b"]), "qwen3:8b"))
        self.assertFalse(run_tools_preflight(WrongToolClient(["qwen3:8b"]), "qwen3:8b"))

    def test_tools_preflight_offers_probe_tools(self):
        client = FakeOllamaClient(["qwen3:8b"])
        offered = []
        original = client.chat_stream

        def recording(model, messages, options=None, think=None, tools=None, timeout=60):
            offered.append([t["function"]["name"] for t in tools])
            return original(model, messages, options=options, think=think, tools=tools, timeout=timeout)

        client.chat_stream = recording
        self.assertTrue(run_tools_preflight(client, "qwen3:8b"))
        self.assertEqual(len(offered), 3)
        self.assertEqual(sorted(offered[0]), ["get_animal_lifespan", "get_recipe_ingredients", "magic_calculator"])


class TestTags(unittest.TestCase):

    def test_split_and_full_name(self):
        self.assertEqual(split_tags("q4_K_M, q8_0,"), ["q4_K_M", "q8_0"])
        self.assertEqual(split_tags(None), [])
        self.assertEqual(full_tag_name("qwen3", "q4_K_M"), "qwen3:q4_K_M")
        self.assertEqual(full_tag_name("qwen3", "llama3:8b"), "llama3:8b")

    def test_expand_wildcards(self):
        available = ["qwen3:q4_K_M", "qwen3:q4_0", "llama3:q4_0", "qwen3:q8_0"]
        tags = expand_tags("qwen3", ["q4*", "Q8_0", "qwen3:q4_K_M"], available)
        self.assertEqual(tags, ["qwen3:q4_0", "qwen3:q4_K_M", "qwen3:Q8_0"])

    def test_wildcard_without_matches(self):
        self.assertEqual(expand_tags("qwen3", ["fp*"], ["qwen3:q4_0"]), [])

    def test_question_mark(self):
        tags = expand_tags("qwen3", ["q?_0"], ["qwen3:q4_0", "qwen3:q8_0", "qwen3:q4_K_M"])
        self.assertEqual(tags, ["qwen3:q4_0", "qwen3:q8_0"])


class TestCloudJudgeSpec(unittest.TestCase):

    @patch.dict(os.environ, {}, clear=True)
    def test_inline_token(self):
        config = parse_judge_spec("@claude:sk-test/claude-sonnet-4-20250514")
        self.assertEqual(config.provider, "anthropic")
        self.assertEqual(config.model_name, "claude-sonnet-4-20250514")
        self.assertEqual(config.api_key, "sk-test")
        self.assertFalse(config.api_key_from_env)

    @patch.dict(os.environ, {"OPENAI_API_KEY": "env-key"}, clear=True)
    def test_token_from_environment(self):
        config = parse_judge_spec("@gpt/gpt-4o")
        self.assertEqual(config.provider, "openai")
        self.assertEqual(config.api_key, "env-key")
        self.assertTrue(config.api_key_from_env)

    @patch.dict(os.environ, {}, clear=True)
    def test_azure_endpoint(self):
        config = parse_judge_spec("@azure:key@myres.openai.azure.com/gpt4-deploy")
        self.assertEqual(config.api_key, "key")
        self.assertEqual(config.endpoint, "https://myres.openai.azure.com")
        self.assertEqual(config.model_name, "gpt4-deploy")

    def test_invalid_specs(self):
        self.assertIsNone(parse_judge_spec("qwen3:32b"))
        self.assertIsNone(parse_judge_spec("@claude"))
        self.assertIsNone(parse_judge_spec("@unknown/model"))
        self.assertIsNone(parse_judge_spec("@claude/"))

    @patch.dict(os.environ, {}, clear=True)
    def test_create_provider(self):
        provider = create_provider(parse_judge_spec("@mistral:k/mistral-large"))
        self.assertEqual(provider.provider_name, "mistral")
        self.assertEqual(provider.model_name, "mistral-large")

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_key(self):
        with self.assertRaises(ValueError):
            create_provider(parse_judge_spec("@claude/claude-sonnet-4-20250514"))

    @patch("ctxbench.clients.cloud.requests.post")
    def test_validate_connection(self, mock_post):
        provider = create_provider(parse_judge_spec("@claude:bad/claude-sonnet-4-20250514"))

        mock_post.return_value = Mock(status_code=401, text="invalid x-api-key")
        ok, error = provider.validate_connection()
        self.assertFalse(ok)
        self.assertIn("command line", error)

        mock_post.return_value = Mock(status_code=200, text="{}")
        self.assertEqual(provider.validate_connection(), (True, None))
        self.assertEqual(mock_post.call_args.kwargs["headers"]["anthropic-version"], "2023-06-01")


class TestMessages(unittest.TestCase):

    def test_string_arguments_are_decoded(self):
        call = ToolCall.from_api({"function": {"name": "magic_calculator", "arguments": '{"a": 5, "b": 3}'}})
        self.assertEqual(call.arguments, {"a": 5, "b": 3})
        self.assertEqual(call.to_api_dict()["function"]["arguments"], {"a": 5, "b": 3})
        self.assertEqual(ToolCall.from_api({"function": {"name": "x", "arguments": "{bad"}}).arguments, {})

    def test_assistant_message_with_tool_calls(self):
        call = ToolCall.from_api({"function": {"name": "get_animal_weight", "arguments": {"animal": "fox"}}})
        payload = ChatMessage.assistant("", [call]).to_api_dict()
        self.assertEqual(payload["role"], "assistant")
        self.assertEqual(payload["tool_calls"][0]["function"]["name"], "get_animal_weight")
        self.assertNotIn("tool_calls", ChatMessage.assistant("ok", []).to_api_dict())

    def test_speeds(self):
        result = ChatResult(prompt_tokens=1000, prompt_eval_duration=500_000_000,
                            completion_tokens=50, eval_duration=2_000_000_000)
        self.assertEqual(result.prompt_toks_per_sec, 2000.0)
        self.assertEqual(result.eval_toks_per_sec, 25.0)
        self.assertIsNone(ChatResult.failure("boom").eval_toks_per_sec)


if __name__ == "__main__":
    unittest.main()
