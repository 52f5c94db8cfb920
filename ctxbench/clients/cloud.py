"""
Cloud Judges - судьи через облачные API

Формат аргумента судьи:
    @provider/model
    @provider:token/model
    @azure:key@endpoint/deployment

Ключ без токена в аргументе берётся из переменных окружения провайдера.

Использование:
    config = parse_judge_spec("@claude/claude-sonnet-4-20250514")
    provider = create_provider(config)
    ok, error = provider.validate_connection()
    raw = provider.judge(system_prompt, user_prompt, 1024)
"""

import os
import logging
from typing import Optional, List, Dict, Any, Tuple

import requests
from pydantic import BaseModel


logger = logging.getLogger(__name__)


PROVIDER_ALIASES: Dict[str, str] = {
    "anthropic": "anthropic",
    "claude": "anthropic",
    "openai": "openai",
    "gpt": "openai",
    "gemini": "gemini",
    "google": "gemini",
    "huggingface": "huggingface",
    "hf": "huggingface",
    "azure": "azure",
    "azureopenai": "azure",
    "cohere": "cohere",
    "mistral": "mistral",
    "together": "together",
    "togetherai": "together",
}

PROVIDER_ENV_VARS: Dict[str, List[str]] = {
    "anthropic": ["ANTHROPIC_API_KEY"],
    "openai": ["OPENAI_API_KEY"],
    "gemini": ["GEMINI_API_KEY", "GOOGLE_API_KEY"],
    "huggingface": ["HF_TOKEN", "HUGGINGFACE_TOKEN"],
    "azure": ["AZURE_OPENAI_API_KEY"],
    "cohere": ["CO_API_KEY", "COHERE_API_KEY"],
    "mistral": ["MISTRAL_API_KEY"],
    "together": ["TOGETHER_API_KEY"],
}

AZURE_ENDPOINT_ENV = "AZURE_OPENAI_ENDPOINT"

OPENAI_COMPATIBLE_URLS: Dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
    "huggingface": "https://router.huggingface.co/v1",
    "mistral": "https://api.mistral.ai/v1",
    "together": "https://api.together.xyz/v1",
}

ANTHROPIC_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
AZURE_API_VERSION = "2024-10-21"
COHERE_URL = "https://api.cohere.com/v1"


class CloudJudgeConfig(BaseModel):
    """Разобранный аргумент облачного судьи"""
    provider: str
    model_name: str
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    api_key_from_env: bool = False

    @property
    def display_name(self) -> str:
        return f"@{self.provider}/{self.model_name}"


def is_cloud_spec(argument: Optional[str]) -> bool:
    return bool(argument) and argument.startswith("@")


def parse_judge_spec(argument: str) -> Optional[CloudJudgeConfig]:
    """
    Разобрать аргумент облачного судьи

    Returns:
        CloudJudgeConfig или None, если аргумент не облачный, не указана
        модель или провайдер неизвестен
    """
    if not is_cloud_spec(argument):
        return None

    value = argument[1:]
    slash = value.find("/")
    if slash == -1:
        return None

    colon = value.find(":")
    token: Optional[str] = None
    if colon != -1 and colon < slash:
        provider_part = value[:colon]
        token = value[colon + 1:slash]
    else:
        provider_part = value[:slash]
    model = value[slash + 1:]

    provider = PROVIDER_ALIASES.get(provider_part.lower())
    if provider is None or not model:
        return None

    endpoint: Optional[str] = None
    if provider == "azure" and token and "@" in token:
        token, endpoint = token.split("@", 1)
        if not endpoint.startswith(("http://", "https://")):
            endpoint = f"https://{endpoint}"

    from_env = False
    if not token:
        for var in PROVIDER_ENV_VARS.get(provider, []):
            if os.getenv(var):
                token = os.getenv(var)
                from_env = True
                break

    if provider == "azure" and not endpoint:
        endpoint = os.getenv(AZURE_ENDPOINT_ENV)

    return CloudJudgeConfig(
        provider=provider,
        model_name=model,
        api_key=token or None,
        endpoint=endpoint,
        api_key_from_env=from_env,
    )


# =============================================================================
# Провайдеры
# =============================================================================

class CloudJudgeProvider:
    """
    Базовый облачный судья

    judge() возвращает сырой текст ответа; разбор вердикта — в
    JudgmentService. Ошибки HTTP поднимаются исключениями, повторы
    делает вызывающая сторона.
    """

    provider_name = ""

    def __init__(self, api_key: str, model_name: str, api_key_from_env: bool = False, timeout: int = 120):
        if not api_key:
            env = " or ".join(PROVIDER_ENV_VARS.get(self.provider_name, []))
            raise ValueError(f"API key for {self.provider_name} is not set (use @{self.provider_name}:TOKEN/model or {env})")
        self.api_key = api_key
        self.model_name = model_name
        self.api_key_from_env = api_key_from_env
        self.timeout = timeout

    def judge(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        raise NotImplementedError

    def api_version(self) -> Optional[str]:
        return None

    def validate_connection(self) -> Tuple[bool, Optional[str]]:
        """
        Проверить ключ и модель коротким запросом

        Returns:
            (успех, сообщение об ошибке)
        """
        try:
            response = self._post(self._validation_body())
        except requests.exceptions.RequestException as e:
            return False, f"Connection error: {e}"

        if response.status_code in (401, 403):
            return False, f"Authentication failed. Please check your API key from {self._key_source()}."
        if response.status_code != 200:
            text = response.text[:300]
            if "model" in text.lower():
                return False, f"Model '{self.model_name}' not found: {text}"
            return False, f"API error ({response.status_code}): {text}"
        return True, None

    def _key_source(self) -> str:
        if self.api_key_from_env:
            return "environment variable (" + " or ".join(PROVIDER_ENV_VARS.get(self.provider_name, [])) + ")"
        return "command line"

    def _validation_body(self) -> Dict[str, Any]:
        raise NotImplementedError

    def _post(self, body: Dict[str, Any]) -> requests.Response:
        raise NotImplementedError

    def _request(self, body: Dict[str, Any]) -> Dict[str, Any]:
        response = self._post(body)
        response.raise_for_status()
        return response.json()


class AnthropicJudgeProvider(CloudJudgeProvider):
    """Anthropic Messages API"""

    provider_name = "anthropic"

    def api_version(self) -> Optional[str]:
        return ANTHROPIC_VERSION

    def judge(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        data = self._request({
            "model": self.model_name,
            "max_tokens": max_tokens,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
            "temperature": 0,
        })
        return "".join(
            block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text"
        )

    def _validation_body(self) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "max_tokens": 10,
            "messages": [{"role": "user", "content": "Hi"}],
        }

    def _post(self, body: Dict[str, Any]) -> requests.Response:
        return requests.post(
            f"{ANTHROPIC_URL}/messages",
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            json=body,
            timeout=self.timeout,
        )


class OpenAICompatibleJudgeProvider(CloudJudgeProvider):
    """OpenAI Chat Completions и совместимые API (Gemini, HF, Mistral, Together)"""

    def __init__(self, api_key: str, model_name: str, provider_name: str, base_url: str,
                 api_key_from_env: bool = False, timeout: int = 120):
        self.provider_name = provider_name
        self.base_url = base_url.rstrip("/")
        super().__init__(api_key, model_name, api_key_from_env, timeout)

    def judge(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        data = self._request({
            "model": self.model_name,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": 0,
        })
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""

    def _validation_body(self) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "messages": [{"role": "user", "content": "Hi"}],
            "max_tokens": 10,
        }

    def _post(self, body: Dict[str, Any]) -> requests.Response:
        return requests.post(
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json=body,
            timeout=self.timeout,
        )


class AzureOpenAIJudgeProvider(OpenAICompatibleJudgeProvider):
    """Azure OpenAI: модель — имя развёртывания"""

    def __init__(self, api_key: str, endpoint: str, model_name: str,
                 api_key_from_env: bool = False, timeout: int = 120):
        if not endpoint:
            raise ValueError(f"Azure endpoint is not set (use @azure:key@endpoint/deployment or {AZURE_ENDPOINT_ENV})")
        super().__init__(api_key, model_name, "azure", endpoint, api_key_from_env, timeout)

    def api_version(self) -> Optional[str]:
        return AZURE_API_VERSION

    def _post(self, body: Dict[str, Any]) -> requests.Response:
        body = {k: v for k, v in body.items() if k != "model"}
        return requests.post(
            f"{self.base_url}/openai/deployments/{self.model_name}/chat/completions",
            params={"api-version": AZURE_API_VERSION},
            headers={"api-key": self.api_key, "Content-Type": "application/json"},
            json=body,
            timeout=self.timeout,
        )


class CohereJudgeProvider(CloudJudgeProvider):
    """Cohere Chat API"""

    provider_name = "cohere"

    def judge(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        data = self._request({
            "model": self.model_name,
            "message": user_prompt,
            "preamble": system_prompt,
            "max_tokens": max_tokens,
            "temperature": 0.0,
        })
        return data.get("text") or ""

    def _validation_body(self) -> Dict[str, Any]:
        return {"model": self.model_name, "message": "Hi", "max_tokens": 10}

    def _post(self, body: Dict[str, Any]) -> requests.Response:
        return requests.post(
            f"{COHERE_URL}/chat",
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json=body,
            timeout=self.timeout,
        )


def create_provider(config: CloudJudgeConfig, timeout: int = 120) -> CloudJudgeProvider:
    """
    Создать провайдера по разобранному аргументу

    Raises:
        ValueError: Нет ключа, нет endpoint для Azure или неизвестный провайдер
    """
    if config.provider == "anthropic":
        return AnthropicJudgeProvider(config.api_key, config.model_name, config.api_key_from_env, timeout)
    if config.provider == "azure":
        return AzureOpenAIJudgeProvider(
            config.api_key, config.endpoint, config.model_name, config.api_key_from_env, timeout
        )
    if config.provider == "cohere":
        return CohereJudgeProvider(config.api_key, config.model_name, config.api_key_from_env, timeout)
    if config.provider in OPENAI_COMPATIBLE_URLS:
        return OpenAICompatibleJudgeProvider(
            config.api_key,
            config.model_name,
            config.provider,
            OPENAI_COMPATIBLE_URLS[config.provider],
            config.api_key_from_env,
            timeout,
        )
    raise ValueError(f"Unknown cloud provider: {config.provider}")
