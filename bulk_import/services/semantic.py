from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ..config.loader import SemanticServiceConfig
from ..errors import ExternalServiceError

"""Semantic inference service (optional last mapping stage).

Request  (POST endpoint, JSON):
    {"fields": [{"name": ..., "samples": [...]}, ...], "targets": [...], "domain": "..."}
Response:
    {"mappings": [{"sourceField": ..., "targetField": ... | "unmapped",
                   "confidence": 0-100, "reasoning": ...}, ...]}
"""

__all__ = [
    "FieldSample",
    "SemanticSuggestion",
    "SemanticInferenceService",
    "HttpSemanticService",
    "build_semantic_service",
    "UNMAPPED",
]

logger = logging.getLogger(__name__)

UNMAPPED = "unmapped"
DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class FieldSample:
    name: str
    samples: tuple[Any, ...]


@dataclass(frozen=True)
class SemanticSuggestion:
    source_field: str
    target_field: str
    confidence: float
    reasoning: str | None = None


class SemanticInferenceService(Protocol):
    def infer(self, fields: Sequence[FieldSample], targets: Sequence[str],
              domain: str) -> list[SemanticSuggestion]:
        ...


def _sample_json(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class HttpSemanticService:
    """httpx client for a JSON semantic-inference endpoint."""

    def __init__(self, endpoint: str, api_key: str | None = None,
                 timeout: float = DEFAULT_TIMEOUT, client: httpx.Client | None = None) -> None:
        self._endpoint = endpoint
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def infer(self, fields: Sequence[FieldSample], targets: Sequence[str],
              domain: str) -> list[SemanticSuggestion]:
        payload = {
            "fields": [
                {"name": f.name, "samples": [_sample_json(v) for v in f.samples[:3]]}
                for f in fields
            ],
            "targets": list(targets),
            "domain": domain,
        }
        try:
            if self._client is not None:
                response = self._client.post(self._endpoint, json=payload, headers=self._headers())
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(self._endpoint, json=payload, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("Semantic service timeout")
            raise ExternalServiceError("semantic service request timed out") from e
        except httpx.HTTPStatusError as e:
            logger.warning("Semantic service HTTP error %s", e.response.status_code)
            raise ExternalServiceError(
                f"semantic service returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.warning("Semantic service transport error: %s", e)
            raise ExternalServiceError(f"semantic service unreachable: {e}") from e
        except ValueError as e:
            raise ExternalServiceError("semantic service returned invalid JSON") from e
        return self._parse(data)

    @staticmethod
    def _parse(data: Any) -> list[SemanticSuggestion]:
        if not isinstance(data, dict) or not isinstance(data.get("mappings"), list):
            raise ExternalServiceError("semantic service response lacks a 'mappings' list")
        suggestions: list[SemanticSuggestion] = []
        for item in data["mappings"]:
            if not isinstance(item, dict):
                continue
            try:
                suggestions.append(
                    SemanticSuggestion(
                        source_field=str(item["sourceField"]),
                        target_field=str(item.get("targetField") or UNMAPPED),
                        confidence=float(item.get("confidence", 0)),
                        reasoning=item.get("reasoning"),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed semantic mapping entry: %r", item)
        return suggestions


def build_semantic_service(config: SemanticServiceConfig, timeout: float) -> HttpSemanticService | None:
    """None when no endpoint is configured (the stage is then skipped)."""
    if not config.endpoint:
        return None
    api_key = os.environ.get(config.api_key_env) if config.api_key_env else None
    return HttpSemanticService(config.endpoint, api_key=api_key, timeout=timeout)
