import dataclasses
import logging
import re
import threading
import time
from datetime import UTC, datetime
from typing import Any, Callable, Iterable

from openai import APIConnectionError, APIStatusError, OpenAI, OpenAIError, RateLimitError

from ytrelay.models import AIConfig, ProviderConfig, ProviderStatus

log = logging.getLogger(__name__)

PROVIDER_OPENAI_COMPATIBLE = "openai_compatible"
PROVIDER_DEEPSEEK = "deepseek"
PROVIDER_GEMINI = "gemini"

DEFAULT_PROVIDER_ORDER = (PROVIDER_OPENAI_COMPATIBLE, PROVIDER_DEEPSEEK, PROVIDER_GEMINI)

PROVIDER_DEFAULTS: dict[str, dict] = {
    PROVIDER_OPENAI_COMPATIBLE: {"base_url": "https://api.openai.com/v1", "model": "gpt-4o-mini"},
    PROVIDER_DEEPSEEK: {"base_url": "https://api.deepseek.com/v1", "model": "deepseek-chat", "temperature": 0.3},
    PROVIDER_GEMINI: {
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "model": "gemini-2.0-flash",
    },
}

RATE_LIMIT_BACKOFF_SECONDS = 5
_VERSION_SEGMENT_RE = re.compile(r"/v\d+[a-z0-9]*(/|$)")
_CHAT_PATH = "/chat/completions"


class ProviderRequestError(Exception):
    """One provider exhausted its retries."""


class AIServiceError(Exception):
    """Every enabled provider failed."""


class NoProviderConfiguredError(AIServiceError):
    """No provider is enabled with an API key."""


def normalize_base_url(base_url: str) -> str:
    """Turn a configured provider URL into the base the SDK appends ``/chat/completions`` to."""
    url = base_url.strip().rstrip("/")
    if url.endswith(_CHAT_PATH):
        url = url[: -len(_CHAT_PATH)]
    if not _VERSION_SEGMENT_RE.search(url):
        url += "/v1"
    return url


def rank_providers(primary: str, enabled: Iterable[str], order: Iterable[str] = DEFAULT_PROVIDER_ORDER) -> list[str]:
    """Attempt order: the primary first (if enabled), then the fixed order.

    Providers outside the fixed order follow alphabetically.
    """
    enabled_set = set(enabled)
    fixed = [name for name in order if name in enabled_set]
    extra = sorted(enabled_set - set(fixed))
    ranked = fixed + extra
    if primary in enabled_set:
        ranked.remove(primary)
        ranked.insert(0, primary)
    return ranked


def _is_rate_limit(message: str | None) -> bool:
    return "rate limit" in (message or "").lower()


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(getattr(error, "message", None) or error)


class OpenAICompatibleClient:
    """Chat completions against one OpenAI-style endpoint, with in-provider retries."""

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.base_url = normalize_base_url(config.base_url)
        # Attempts are counted here so backoff stays linear and per-provider.
        self._client = OpenAI(
            api_key=config.api_key or "not-needed",
            base_url=self.base_url,
            timeout=config.timeout,
            max_retries=0,
        )

    def _retry_log(self, attempt: int, error: str):
        log.warning("%s attempt %d: %s", self.config.name, attempt + 1, error)

    def chat(self, system_prompt: str, user_prompt: str) -> str:
        last_error = "no attempts made"
        for attempt in range(self.config.max_retries):
            if attempt > 0:
                delay = self.config.retry_delay * attempt
                log.info("%s: retry %d/%d in %.1fs", self.config.name, attempt + 1, self.config.max_retries, delay)
                time.sleep(delay)
            try:
                response = self._client.chat.completions.create(
                    model=self.config.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    stream=False,
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                )
            except RateLimitError as e:
                last_error = f"HTTP {e.status_code}: {e.message}"
                self._retry_log(attempt, last_error)
                time.sleep(RATE_LIMIT_BACKOFF_SECONDS * (attempt + 1))
                continue
            except APIStatusError as e:
                last_error = f"HTTP {e.status_code}: {e.message}"
                self._retry_log(attempt, last_error)
                if _is_rate_limit(e.message):
                    time.sleep(RATE_LIMIT_BACKOFF_SECONDS * (attempt + 1))
                continue
            except APIConnectionError as e:
                last_error = f"request failed: {e}"
                self._retry_log(attempt, last_error)
                continue
            except (OpenAIError, ValueError) as e:
                last_error = f"invalid response: {e}"
                self._retry_log(attempt, last_error)
                continue

            # Some compatible providers answer 200 with an error object instead of choices.
            error = getattr(response, "error", None)
            if error:
                message = _error_message(error)
                last_error = f"API error: {message}"
                self._retry_log(attempt, last_error)
                if _is_rate_limit(message):
                    time.sleep(RATE_LIMIT_BACKOFF_SECONDS * (attempt + 1))
                continue

            choices = getattr(response, "choices", None)
            if not choices:
                last_error = "response contained no choices"
                self._retry_log(attempt, last_error)
                continue
            message = getattr(choices[0], "message", None)
            content = getattr(message, "content", None)
            if not isinstance(content, str) or not content.strip():
                last_error = "response content was empty"
                continue
            return content.strip()

        raise ProviderRequestError(
            f"{self.config.name} failed after {self.config.max_retries} attempts: {last_error}"
        )


class AIServiceManager:
    """Routes chat prompts across providers with failover.

    Provider status is observability only: whether a provider is tried is
    decided by ``is_provider_enabled``; status only affects which one is
    preferred. Status is written by ``_record_attempt`` alone, under a lock.
    """

    def __init__(
        self,
        config: AIConfig,
        client_factory: Callable[[ProviderConfig], OpenAICompatibleClient] = OpenAICompatibleClient,
    ):
        self.config = config
        self._client_factory = client_factory
        self._clients: dict[str, OpenAICompatibleClient] = {}
        self._lock = threading.Lock()
        self._statuses: dict[str, ProviderStatus] = {
            name: ProviderStatus(
                provider=name,
                enabled=self.is_provider_enabled(name),
                available=self.is_provider_enabled(name),
                model=cfg.model,
                base_url=cfg.base_url,
            )
            for name, cfg in config.providers.items()
        }

    def is_provider_enabled(self, name: str) -> bool:
        cfg = self.config.providers.get(name)
        return bool(cfg and cfg.enabled and cfg.api_key)

    def _ranked(self) -> list[str]:
        enabled = [name for name in self.config.providers if self.is_provider_enabled(name)]
        return rank_providers(self.config.primary_service, enabled)

    def statuses(self) -> dict[str, ProviderStatus]:
        with self._lock:
            return {name: dataclasses.replace(s) for name, s in self._statuses.items()}

    def get_preferred_provider(self) -> str:
        ranked = self._ranked()
        if not ranked:
            raise NoProviderConfiguredError("no AI service configured")
        return ranked[0]

    def get_available_provider(self) -> str:
        """First enabled provider whose last attempt succeeded, else the preferred one."""
        ranked = self._ranked()
        if not ranked:
            raise NoProviderConfiguredError("no AI service configured")
        snapshot = self.statuses()
        for name in ranked:
            if snapshot[name].available:
                return name
        return ranked[0]

    def _client(self, name: str) -> OpenAICompatibleClient:
        with self._lock:
            client = self._clients.get(name)
            if client is None:
                client = self._client_factory(self.config.providers[name])
                self._clients[name] = client
            return client

    def _record_attempt(self, name: str, ok: bool, error: str | None = None):
        with self._lock:
            status = self._statuses[name]
            status.available = ok
            status.last_checked = datetime.now(UTC).isoformat()
            status.last_error = None if ok else error

    def chat_completion(self, system_prompt: str, user_prompt: str) -> tuple[str, str]:
        """Return (text, provider name) from the first provider that answers."""
        ranked = self._ranked()
        if not ranked:
            raise NoProviderConfiguredError("no AI service configured")

        last_error = ""
        last_provider = ""
        for name in ranked:
            try:
                text = self._client(name).chat(system_prompt, user_prompt)
            except ProviderRequestError as e:
                self._record_attempt(name, False, str(e))
                last_error, last_provider = str(e), name
                log.warning("AI provider %s failed, trying next: %s", name, e)
                continue
            self._record_attempt(name, True)
            log.info("AI request served by %s", name)
            return text, name

        raise AIServiceError(f"all AI providers failed; last error from {last_provider}: {last_error}")
