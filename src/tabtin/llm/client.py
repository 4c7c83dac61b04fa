"""HTTP client for OpenAI-compatible vision chat-completion endpoints."""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from tabtin.errors import MalformedReplyError, ModelCallError
from tabtin.llm.failure_classifier import classify_failure
from tabtin.llm.usage import TokenUsage, extract_usage

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "tabtin/0.1"
DEFAULT_TIMEOUT_SECONDS = 600.0
CONNECT_TIMEOUT_SECONDS = 10.0
BODY_SNIPPET_CHARS = 1_000


@dataclass(slots=True)
class ModelRequest:
    """One chat-completion call with multimodal user content."""

    endpoint: str
    api_key: str
    model: str
    content: list[dict[str, Any]]
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


@dataclass(slots=True)
class ModelReply:
    """Assistant text plus what the endpoint reported about the call."""

    content: str
    model: str | None
    usage: TokenUsage
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int | None:
        return self.usage.total_tokens


def text_part(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def image_part(url: str) -> dict[str, Any]:
    return {"type": "image_url", "image_url": {"url": url}}


def data_url(content: bytes, mime_type: str) -> str:
    """Inline image bytes as a base64 data URL."""

    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


class ModelClient:
    """Synchronous httpx wrapper that maps every failure onto the pipeline's error types."""

    def __init__(
        self,
        *,
        transport_retries: int = 0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            headers={"User-Agent": user_agent},
            transport=transport or httpx.HTTPTransport(retries=transport_retries),
        )

    def complete(self, request: ModelRequest) -> ModelReply:
        """POST the request and return the assistant message content."""

        payload = {
            "model": request.model,
            "messages": [{"role": "user", "content": request.content}],
        }
        headers = {"Content-Type": "application/json"}
        if request.api_key:
            headers["Authorization"] = f"Bearer {request.api_key}"
        timeout = httpx.Timeout(
            request.timeout_seconds,
            connect=min(CONNECT_TIMEOUT_SECONDS, request.timeout_seconds),
        )

        try:
            response = self._client.post(
                request.endpoint,
                json=payload,
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            logger.warning("Model call to %s timed out", request.endpoint)
            classification = classify_failure(status_code=None, body=str(exc), timed_out=True)
            raise ModelCallError(
                f"Model call timed out after {request.timeout_seconds:.0f}s",
                failure_class=classification.failure_class,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s: %s", request.endpoint, exc)
            classification = classify_failure(status_code=None, body=str(exc))
            raise ModelCallError(
                f"Model call failed: {exc}",
                failure_class=classification.failure_class,
            ) from exc

        if not response.is_success:
            body = response.text[:BODY_SNIPPET_CHARS]
            classification = classify_failure(status_code=response.status_code, body=body)
            logger.warning(
                "Model endpoint returned HTTP %s (%s)",
                response.status_code,
                classification.failure_class.value,
            )
            raise ModelCallError(
                f"Model endpoint returned HTTP {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
                failure_class=classification.failure_class,
            )

        return _parse_reply(response)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ModelClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def build_content(
    prompt: str,
    images: Sequence[tuple[bytes, str, str | None]],
    *,
    page_label: str,
) -> list[dict[str, Any]]:
    """Prompt text, then one image part per image followed by its text layer when present."""

    content = [text_part(prompt)]
    for page, (image_bytes, mime_type, extracted_text) in enumerate(images, start=1):
        content.append(image_part(data_url(image_bytes, mime_type)))
        if extracted_text and extracted_text.strip():
            label = page_label.format(page=page)
            content.append(text_part(f"{label}:\n{extracted_text.strip()}"))
    return content


def _parse_reply(response: httpx.Response) -> ModelReply:
    try:
        body = response.json()
    except ValueError as exc:
        raise MalformedReplyError(
            f"Model endpoint returned invalid JSON: {response.text[:BODY_SNIPPET_CHARS]}",
        ) from exc
    if not isinstance(body, dict):
        raise MalformedReplyError("Model endpoint returned a non-object JSON body")

    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise MalformedReplyError(
            "Model reply has no choices[0].message.content",
        ) from exc
    if isinstance(content, list):
        content = "".join(
            str(part.get("text", "")) for part in content if isinstance(part, dict)
        )
    if not isinstance(content, str) or not content.strip():
        raise MalformedReplyError("Model reply content is empty")

    model = body.get("model")
    return ModelReply(
        content=content,
        model=model if isinstance(model, str) else None,
        usage=extract_usage(body),
        raw=body,
    )
