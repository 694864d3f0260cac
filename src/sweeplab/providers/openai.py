# Copyright (c) Syntropy Systems
"""OpenAI-compatible chat completions provider over httpx."""
from __future__ import annotations

import json
import logging
import os
from typing import TYPE_CHECKING, Optional, cast

import httpx

from sweeplab.errors import ProviderFatalError, ProviderTransientError
from sweeplab.models import TokenUsage

from .base import CancellationToken, Generation, GenerationProvider

if TYPE_CHECKING:
    from sweeplab.models import Combination

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-3.5-turbo"
TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429})
INTEGER_PARAMETERS = frozenset({"max_tokens", "n", "seed", "top_k"})


def classify_status(status_code: int, detail: str) -> ProviderTransientError | ProviderFatalError:
    """Map an HTTP error status to the matching provider error."""
    msg = f"Provider returned HTTP {status_code}: {detail}"
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:  # noqa: PLR2004
        return ProviderTransientError(msg)
    return ProviderFatalError(msg)


class OpenAIProvider(GenerationProvider):
    """Calls ``/chat/completions`` on any OpenAI-compatible endpoint.

    Every value in the combination is sent as a top-level sampling parameter,
    so sweeping ``frequency_penalty`` or ``presence_penalty`` works the same
    way as ``temperature``. The response body is streamed so a stopped batch
    abandons slow calls between chunks.
    """

    name: str = "openai"

    base_url: str
    default_model: str
    _client: httpx.Client

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        timeout: float = 60.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        """Initialize the provider.

        Args:
            base_url: API root, e.g. "https://api.openai.com/v1"
            api_key: Bearer token; falls back to $OPENAI_API_KEY
            model: Model used when the batch does not name one
            timeout: Per-request timeout in seconds
            http_client: Preconfigured client, mainly for tests

        """
        self.base_url = base_url.rstrip("/")
        self.default_model = model
        key = api_key or os.environ.get("OPENAI_API_KEY")
        self._headers = {"Authorization": f"Bearer {key}"} if key else {}
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(timeout, connect=10.0)
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def build_payload(
        self, prompt: str, combination: Combination, model: Optional[str] = None
    ) -> dict[str, object]:
        """Request body for one generation."""
        payload: dict[str, object] = {
            "model": model or self.default_model,
            "messages": [{"role": "user", "content": prompt}],
        }
        for name, value in combination.items():
            payload[name] = int(value) if name in INTEGER_PARAMETERS else value
        return payload

    def generate(
        self,
        prompt: str,
        combination: Combination,
        cancel: CancellationToken,
        model: Optional[str] = None,
    ) -> Generation:
        """Run one chat completion."""
        cancel.raise_if_cancelled()
        url = f"{self.base_url}/chat/completions"
        payload = self.build_payload(prompt, combination, model)

        try:
            with self._client.stream(
                "POST", url, json=payload, headers=self._headers
            ) as response:
                chunks: list[bytes] = []
                for chunk in response.iter_bytes():
                    cancel.raise_if_cancelled()
                    chunks.append(chunk)
                body = b"".join(chunks)
        except httpx.TimeoutException as e:
            msg = f"Request to {url} timed out"
            raise ProviderTransientError(msg) from e
        except httpx.TransportError as e:
            msg = f"Cannot reach {self.base_url}: {e}"
            raise ProviderTransientError(msg) from e

        if response.status_code >= 400:  # noqa: PLR2004
            raise classify_status(response.status_code, _error_detail(body))

        return self.parse_response(body, model or self.default_model)

    def parse_response(self, body: bytes, model: str) -> Generation:
        """Extract text and usage from a chat completions response body."""
        try:
            data = cast("dict[str, object]", json.loads(body))
            choices = cast("list[dict[str, object]]", data["choices"])
            message = cast("dict[str, object]", choices[0]["message"])
            text = cast("Optional[str]", message.get("content")) or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            msg = "Malformed chat completion response"
            raise ProviderTransientError(msg) from e

        usage = None
        raw_usage = data.get("usage")
        if isinstance(raw_usage, dict):
            usage = TokenUsage.model_validate(raw_usage)

        return Generation(
            text=text,
            usage=usage,
            model=cast("Optional[str]", data.get("model")) or model,
        )

    def check(self, model: Optional[str] = None) -> None:
        """Verify credentials and the model against ``/models`` before a batch starts.

        A model missing from a non-empty listing is fatal. Endpoints that list
        nothing, or return a body that is not a model listing, are trusted.
        """
        url = f"{self.base_url}/models"
        try:
            response = self._client.get(url, headers=self._headers)
        except httpx.InvalidURL as e:
            msg = f"Invalid provider URL {url!r}: {e}"
            raise ProviderFatalError(msg) from e
        except httpx.HTTPError as e:
            # Unreachable now may be reachable later; let the retries decide
            logger.warning("Preflight check against %s failed: %s", self.base_url, e)
            return
        if response.status_code in (401, 403):
            msg = f"Provider rejected credentials (HTTP {response.status_code})"
            raise ProviderFatalError(msg)
        if response.status_code >= 400:  # noqa: PLR2004
            logger.warning(
                "Preflight check against %s returned HTTP %d",
                self.base_url, response.status_code,
            )
            return

        available = _model_ids(response.content)
        wanted = model or self.default_model
        if available and wanted not in available:
            msg = f"Unknown model {wanted!r} at {self.base_url}"
            raise ProviderFatalError(msg)


def _model_ids(body: bytes) -> set[str]:
    try:
        data = json.loads(body)
    except ValueError:
        return set()
    entries = data.get("data") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        return set()
    return {
        str(entry["id"]) for entry in entries
        if isinstance(entry, dict) and "id" in entry
    }


def _error_detail(body: bytes) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body[:200].decode("utf-8", errors="replace")
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and "message" in error:
            return str(error["message"])
    return str(data)[:200]
