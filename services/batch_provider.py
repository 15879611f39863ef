"""
Azure OpenAI Batch API client

Batch jobs run provider-side at batch-tier pricing and may take up to 24 hours.
Request lines are correlated back to rows through their custom_id.
"""
import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from openai import AsyncAzureOpenAI

from config import settings
from services.ai_provider import ModelPricing
import logging

logger = logging.getLogger(__name__)

COMPLETION_WINDOW = "24h"
BATCH_ENDPOINT = "/chat/completions"
DEFAULT_MAX_COMPLETION_TOKENS = 8192

# Batch tier is 50% of standard pricing
BATCH_PRICING = ModelPricing(input=0.075, output=0.30)


class BatchProviderError(Exception):
    """Batch API not configured or a batch API call failed"""


@dataclass
class BatchStatus:
    batch_id: str
    status: str
    output_file_id: Optional[str] = None
    error_file_id: Optional[str] = None
    request_counts: Optional[Dict[str, int]] = None  # {total, completed, failed}
    errors: List[str] = field(default_factory=list)


@dataclass
class BatchResultLine:
    custom_id: str
    text: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    error: Optional[str] = None


def custom_id_for_row(row_id: str) -> str:
    return f"row-{row_id}"


def generate_batch_jsonl(
    row_prompts: List[Tuple[str, str]],
    deployment: Optional[str] = None,
    max_completion_tokens: int = DEFAULT_MAX_COMPLETION_TOKENS,
) -> Tuple[str, List[Dict[str, str]]]:
    """Build the request payload for (row_id, prompt) pairs and the row mappings"""
    model = deployment or settings.AZURE_BATCH_DEPLOYMENT
    mappings = []
    lines = []
    for row_id, prompt in row_prompts:
        custom_id = custom_id_for_row(row_id)
        mappings.append({"rowId": row_id, "customId": custom_id})
        lines.append(json.dumps({
            "custom_id": custom_id,
            "method": "POST",
            "url": BATCH_ENDPOINT,
            "body": {
                "model": model,
                "messages": [{"role": "user", "content": prompt}],
                "max_completion_tokens": max_completion_tokens,
            },
        }))
    return "\n".join(lines), mappings


def _parse_result_line(record: Dict[str, Any]) -> Optional[BatchResultLine]:
    custom_id = record.get("custom_id")
    if not custom_id:
        return None

    error = record.get("error")
    if error:
        message = (error.get("message") or error.get("code")) if isinstance(error, dict) else str(error)
        return BatchResultLine(custom_id=custom_id, error=message or "Request failed")

    response = record.get("response") or {}
    body = response.get("body") or {}
    status_code = response.get("status_code") or 200
    if status_code >= 400:
        body_error = body.get("error") or {}
        message = body_error.get("message") if isinstance(body_error, dict) else None
        return BatchResultLine(custom_id=custom_id, error=message or f"Request failed with status {status_code}")

    choices = body.get("choices") or []
    if not choices:
        return BatchResultLine(custom_id=custom_id, error="Response contained no choices")

    usage = body.get("usage") or {}
    message = choices[0].get("message") or {}
    return BatchResultLine(
        custom_id=custom_id,
        text=message.get("content") or "",
        input_tokens=usage.get("prompt_tokens") or 0,
        output_tokens=usage.get("completion_tokens") or 0,
    )


def parse_batch_results(content: str) -> List[BatchResultLine]:
    """Parse a result/error file; malformed lines are logged and skipped"""
    results = []
    for line in (content or "").splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except ValueError as e:
            logger.warning(f"[BATCH] Skipping malformed result line: {e}")
            continue
        if not isinstance(record, dict):
            continue
        parsed = _parse_result_line(record)
        if parsed is not None:
            results.append(parsed)
    return results


def calculate_batch_cost(input_tokens: int, output_tokens: int) -> float:
    return (input_tokens * BATCH_PRICING.input + output_tokens * BATCH_PRICING.output) / 1_000_000


def _to_status(batch) -> BatchStatus:
    counts = None
    if getattr(batch, "request_counts", None) is not None:
        counts = {
            "total": batch.request_counts.total or 0,
            "completed": batch.request_counts.completed or 0,
            "failed": batch.request_counts.failed or 0,
        }
    errors = []
    batch_errors = getattr(batch, "errors", None)
    if batch_errors is not None and getattr(batch_errors, "data", None):
        errors = [e.message or e.code or "" for e in batch_errors.data]
    return BatchStatus(
        batch_id=batch.id,
        status=batch.status,
        output_file_id=batch.output_file_id,
        error_file_id=batch.error_file_id,
        request_counts=counts,
        errors=[e for e in errors if e],
    )


class AzureBatchService:
    """Thin async wrapper over the Batch API endpoints the engine uses"""

    def __init__(self):
        self.client = None
        self._loop = None

    def is_configured(self) -> bool:
        return bool(settings.AZURE_BATCH_ENDPOINT and settings.AZURE_BATCH_API_KEY)

    def _ensure_client(self) -> AsyncAzureOpenAI:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # connections opened under an earlier asyncio.run() are unusable
            self.client = None
            self._loop = loop
        if self.client is None:
            if not self.is_configured():
                raise BatchProviderError(
                    "Azure Batch API not configured. Set AZURE_BATCH_ENDPOINT and AZURE_BATCH_API_KEY."
                )
            self.client = AsyncAzureOpenAI(
                azure_endpoint=settings.AZURE_BATCH_ENDPOINT.rstrip("/"),
                api_key=settings.AZURE_BATCH_API_KEY,
                api_version=settings.AZURE_BATCH_API_VERSION,
            )
        return self.client

    async def upload_file(self, content: str, filename: str = "batch_input.jsonl") -> str:
        client = self._ensure_client()
        try:
            uploaded = await client.files.create(
                file=(filename, content.encode("utf-8")),
                purpose="batch",
            )
        except Exception as e:
            raise BatchProviderError(f"Failed to upload batch file: {e}") from e
        return uploaded.id

    async def create_batch(self, file_id: str, metadata: Optional[Dict[str, str]] = None) -> BatchStatus:
        client = self._ensure_client()
        try:
            batch = await client.batches.create(
                input_file_id=file_id,
                endpoint=BATCH_ENDPOINT,
                completion_window=COMPLETION_WINDOW,
                metadata=metadata,
            )
        except Exception as e:
            raise BatchProviderError(f"Failed to create batch job: {e}") from e
        return _to_status(batch)

    async def get_status(self, batch_id: str) -> BatchStatus:
        client = self._ensure_client()
        try:
            batch = await client.batches.retrieve(batch_id)
        except Exception as e:
            raise BatchProviderError(f"Failed to get batch status: {e}") from e
        return _to_status(batch)

    async def download_file(self, file_id: str) -> str:
        client = self._ensure_client()
        try:
            content = await client.files.content(file_id)
        except Exception as e:
            raise BatchProviderError(f"Failed to download batch results: {e}") from e
        return content.text

    async def cancel_batch(self, batch_id: str) -> BatchStatus:
        client = self._ensure_client()
        try:
            batch = await client.batches.cancel(batch_id)
        except Exception as e:
            raise BatchProviderError(f"Failed to cancel batch job: {e}") from e
        return _to_status(batch)

    async def list_batches(self, limit: int = 20) -> List[BatchStatus]:
        client = self._ensure_client()
        try:
            page = await client.batches.list(limit=limit)
        except Exception as e:
            raise BatchProviderError(f"Failed to list batch jobs: {e}") from e
        return [_to_status(batch) for batch in page.data]

    async def delete_file(self, file_id: Optional[str]) -> bool:
        """Best-effort artifact cleanup; failures are logged, never raised"""
        if not file_id:
            return False
        try:
            client = self._ensure_client()
            await client.files.delete(file_id)
            return True
        except Exception as e:
            logger.warning(f"[BATCH] Failed to delete file {file_id}: {e}")
            return False


# Singleton instance
azure_batch_service = AzureBatchService()
