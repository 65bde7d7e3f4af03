from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Final, Optional, Sequence
from urllib.parse import urlsplit

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    PermissionDeniedError,
)

DEFAULT_ENDPOINT: Final[str] = "https://api.openai.com"
DEFAULT_MODEL: Final[str] = "gpt-4o-mini"
REQUEST_TIMEOUT_SECONDS: Final[float] = 15.0
CONTEXT_WINDOW: Final[int] = 3

_SYSTEM_PROMPT: Final[str] = (
    "You are a precise subtitle translator. Keep timing subtleties and concise language. "
    "Avoid adding commentary."
)
_FULL_PATH = re.compile(r"/(chat/completions|responses)(?:/|$)", re.IGNORECASE)
_VERSION_SUFFIX = re.compile(r"/v\d+$", re.IGNORECASE)


class TranslationError(Exception):
    code = "TRANSLATION_FAILED"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)


class TranslationTimeout(TranslationError):
    code = "TIMEOUT"


class AuthError(TranslationError):
    code = "AUTH_ERROR"


class EmptyResult(TranslationError):
    code = "EMPTY_TRANSLATION"


class TransportError(TranslationError):
    code = "TRANSPORT_ERROR"


class HttpError(TranslationError):
    def __init__(self, status: int, message: str = "") -> None:
        self.status = status
        self.message = message or "REQUEST_FAILED"
        super().__init__(f"HTTP {status}: {self.message}")

    @property
    def code(self) -> str:  # type: ignore[override]
        return f"HTTP_{self.status}"


@dataclass(frozen=True)
class Fragment:
    text: str
    source_context: tuple[str, ...] = ()
    source_id: str = ""

    @classmethod
    def create(cls, text: str, context: Optional[Sequence[str]] = None, source_id: str = "") -> "Fragment":
        lines = tuple(line for line in (context or ()) if line)
        return cls(text=text, source_context=lines[-CONTEXT_WINDOW:], source_id=source_id)


@dataclass(frozen=True)
class Endpoint:
    url: str
    base_url: str
    api: str  # "chat" or "responses"


def normalize_endpoint(api_base_url: Optional[str]) -> Endpoint:
    endpoint = (api_base_url or DEFAULT_ENDPOINT).strip()
    parts = urlsplit(endpoint)
    if parts.scheme.lower() not in {"http", "https"} or not parts.netloc:
        endpoint = DEFAULT_ENDPOINT
    endpoint = endpoint.rstrip("/")
    match = _FULL_PATH.search(endpoint)
    if match is None:
        base_url = endpoint if _VERSION_SUFFIX.search(endpoint) else f"{endpoint}/v1"
        return Endpoint(url=f"{base_url}/chat/completions", base_url=base_url, api="chat")
    api = "responses" if match.group(1).lower() == "responses" else "chat"
    return Endpoint(url=endpoint, base_url=endpoint[: match.start()], api=api)


def build_prompt(fragment: Fragment, target_language: str) -> str:
    context_block = ""
    if fragment.source_context:
        context_block = "Context:\n" + "\n".join(fragment.source_context) + "\n\n"
    return (
        f"Translate the following subtitle line into {target_language}. Provide translation only.\n\n"
        f"{context_block}Subtitle:\n{fragment.text}"
    )


class ChatTranslationAdapter:
    """Stateless bridge from a fragment to one chat-completion call.

    Owns the request timeout. Every failure is raised as a
    :class:`TranslationError` subclass; nothing is retried here.
    """

    def __init__(
        self,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
        temperature: float = 0.2,
        max_tokens: int = 200,
    ) -> None:
        self._timeout = timeout_seconds
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._clients: dict[tuple[str, str], AsyncOpenAI] = {}

    async def translate(
        self,
        fragment: Fragment,
        api_key: str,
        target_language: str,
        model: str,
        api_base_url: str,
    ) -> str:
        if not api_key:
            raise AuthError("MISSING_API_KEY")
        endpoint = normalize_endpoint(api_base_url)
        client = self._client_for(api_key, endpoint.base_url)
        prompt = build_prompt(fragment, target_language)
        model_name = model or DEFAULT_MODEL
        try:
            if endpoint.api == "responses":
                content = await asyncio.wait_for(
                    self._call_responses(client, model_name, prompt), timeout=self._timeout
                )
            else:
                content = await asyncio.wait_for(
                    self._call_chat(client, model_name, prompt), timeout=self._timeout
                )
        except asyncio.TimeoutError as exc:
            raise TranslationTimeout(f"no response within {self._timeout:g}s") from exc
        except APITimeoutError as exc:
            raise TranslationTimeout(str(exc)) from exc
        except (AuthenticationError, PermissionDeniedError) as exc:
            raise AuthError(self._status_message(exc)) from exc
        except APIStatusError as exc:
            raise HttpError(exc.status_code, self._status_message(exc)) from exc
        except APIConnectionError as exc:
            raise TransportError(str(exc)) from exc

        translated = (content or "").strip()
        if not translated:
            raise EmptyResult()
        return translated

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.close()

    async def _call_chat(self, client: AsyncOpenAI, model: str, prompt: str) -> str:
        response = await client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def _call_responses(self, client: AsyncOpenAI, model: str, prompt: str) -> str:
        response = await client.responses.create(
            model=model,
            instructions=_SYSTEM_PROMPT,
            input=prompt,
            temperature=self._temperature,
            max_output_tokens=self._max_tokens,
        )
        return getattr(response, "output_text", "") or ""

    def _client_for(self, api_key: str, base_url: str) -> AsyncOpenAI:
        key = (api_key, base_url)
        client = self._clients.get(key)
        if client is None:
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=self._timeout,
                max_retries=0,
            )
            self._clients[key] = client
        return client

    @staticmethod
    def _status_message(exc: APIStatusError) -> str:
        body: Any = getattr(exc, "body", None)
        if isinstance(body, dict):
            error = body.get("error", body)
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        response = getattr(exc, "response", None)
        reason = getattr(response, "reason_phrase", "") if response is not None else ""
        return reason or exc.message or "REQUEST_FAILED"
