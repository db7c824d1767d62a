"""
AI Analysis Service — Bedrock (Anthropic messages API)

Contract used by the invoker:

    analyze(content, content_kind, system_instructions)
        → ServiceResponse(text, input_tokens, output_tokens)

content_kind:
    "text"        content is str, sent as a text block
    "pdf"         content is bytes, sent as a base64 document block
    "image/png"   content is bytes, sent as a base64 image block
    "image/jpeg"

Error classification (botocore ClientError → typed errors):
    ThrottlingException / TooManyRequests / HTTP 429       → RateLimitedError
    ServiceUnavailable / ModelNotReady / ModelTimeout / 5xx → TransientServiceError
    connect / read timeouts, dropped connections           → TransientServiceError
    everything else (validation, access denied, 4xx)       → PermanentServiceError

Retries are owned by AnalysisInvoker; the botocore client is created with
its own retry mode disabled so backoff is not applied twice.
"""

from __future__ import annotations

import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from app.core.exceptions import (
    AnalysisServiceError,
    PermanentServiceError,
    RateLimitedError,
    TransientServiceError,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"

CONTENT_TEXT = "text"
CONTENT_PDF = "pdf"
IMAGE_KINDS: frozenset[str] = frozenset({"image/png", "image/jpeg"})

_RATE_LIMIT_CODES = frozenset({
    "ThrottlingException",
    "TooManyRequestsException",
    "ServiceQuotaExceededException",
})
_TRANSIENT_CODES = frozenset({
    "ServiceUnavailableException",
    "InternalServerException",
    "ModelNotReadyException",
    "ModelTimeoutException",
    "ModelStreamErrorException",
})
_TRANSIENT_NETWORK_ERRORS = (
    ConnectTimeoutError,
    ReadTimeoutError,
    EndpointConnectionError,
    ConnectionClosedError,
)


@dataclass
class ServiceResponse:
    text:          str
    input_tokens:  int = 0
    output_tokens: int = 0


class AnalysisService(ABC):
    """Abstract AI text-analysis backend."""

    @abstractmethod
    async def analyze(
        self,
        content: str | bytes,
        content_kind: str,
        system_instructions: str,
    ) -> ServiceResponse:
        """Send one unit; raise an AnalysisServiceError subclass on failure."""


# ---------------------------------------------------------------------------
# Request shaping
# ---------------------------------------------------------------------------

def build_content_blocks(content: str | bytes, content_kind: str) -> list[dict]:
    if content_kind == CONTENT_TEXT:
        text = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else content
        return [{"type": "text", "text": text}]

    if isinstance(content, str):
        raise PermanentServiceError(f"Binary content required for {content_kind}")
    data = base64.b64encode(content).decode("ascii")

    if content_kind == CONTENT_PDF:
        block = {
            "type": "document",
            "source": {"type": "base64", "media_type": "application/pdf", "data": data},
        }
    elif content_kind in IMAGE_KINDS:
        block = {
            "type": "image",
            "source": {"type": "base64", "media_type": content_kind, "data": data},
        }
    else:
        raise PermanentServiceError(f"Unsupported content kind: {content_kind}")

    return [block, {"type": "text", "text": "Analyze the attached document."}]


def classify_client_error(exc: ClientError) -> AnalysisServiceError:
    """Map a botocore ClientError onto the retry taxonomy."""
    error = exc.response.get("Error", {})
    meta = exc.response.get("ResponseMetadata", {})
    code = error.get("Code", "")
    status = meta.get("HTTPStatusCode")
    message = error.get("Message") or str(exc)

    retry_after: float | None = None
    header = (meta.get("HTTPHeaders") or {}).get("retry-after")
    if header:
        try:
            retry_after = float(header)
        except ValueError:
            retry_after = None

    if code in _RATE_LIMIT_CODES or status == 429:
        return RateLimitedError(message, status_code=status or 429, retry_after=retry_after)
    if code in _TRANSIENT_CODES or (status is not None and status >= 500):
        return TransientServiceError(message, status_code=status, retry_after=retry_after)
    return PermanentServiceError(message, status_code=status)


# ---------------------------------------------------------------------------
# Bedrock implementation
# ---------------------------------------------------------------------------

class BedrockAnalysisService(AnalysisService):
    """
    Invokes an Anthropic model on Amazon Bedrock through aioboto3.

    One aioboto3 Session per service instance; a client context is opened
    per call, matching how the storage layer uses aioboto3.
    """

    def __init__(
        self,
        model_id:    str,
        region:      str,
        max_tokens:  int   = 4096,
        temperature: float = 0.0,
        timeout:     int   = 300,
    ) -> None:
        self._model_id = model_id
        self._region = region
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._session = aioboto3.Session()
        self._config = BotoConfig(
            read_timeout=timeout,
            connect_timeout=10,
            retries={"max_attempts": 0, "mode": "standard"},
        )

    @classmethod
    def from_settings(cls) -> "BedrockAnalysisService":
        from app.core.config import settings
        return cls(
            model_id=settings.bedrock_model_id,
            region=settings.aws_region,
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
            timeout=settings.ai_request_timeout_seconds,
        )

    @property
    def model_id(self) -> str:
        return self._model_id

    def _client(self):
        return self._session.client(
            "bedrock-runtime",
            region_name=self._region,
            config=self._config,
        )

    async def analyze(
        self,
        content: str | bytes,
        content_kind: str,
        system_instructions: str,
    ) -> ServiceResponse:
        body = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens":        self._max_tokens,
            "temperature":       self._temperature,
            "system":            system_instructions,
            "messages": [
                {"role": "user", "content": build_content_blocks(content, content_kind)},
            ],
        }

        try:
            async with self._client() as bedrock:
                resp = await bedrock.invoke_model(
                    modelId=self._model_id,
                    body=json.dumps(body),
                    contentType="application/json",
                    accept="application/json",
                )
                raw = await resp["body"].read()
        except ClientError as exc:
            raise classify_client_error(exc) from exc
        except _TRANSIENT_NETWORK_ERRORS as exc:
            raise TransientServiceError(str(exc)) from exc
        except BotoCoreError as exc:
            raise PermanentServiceError(str(exc)) from exc

        payload = json.loads(raw)
        text = "".join(
            block.get("text", "")
            for block in payload.get("content", [])
            if block.get("type") == "text"
        )
        usage = payload.get("usage") or {}

        logger.debug(
            "Bedrock | model=%s kind=%s in=%s out=%s",
            self._model_id, content_kind,
            usage.get("input_tokens"), usage.get("output_tokens"),
        )
        return ServiceResponse(
            text=text,
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )
