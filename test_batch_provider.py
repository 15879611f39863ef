"""
Unit tests for batch request/result files
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.batch_provider import (
    BATCH_ENDPOINT, AzureBatchService, calculate_batch_cost, generate_batch_jsonl, parse_batch_results,
)


def result_line(custom_id, content="ok", prompt_tokens=10, completion_tokens=5, status_code=200):
    return json.dumps({
        "custom_id": custom_id,
        "response": {
            "status_code": status_code,
            "body": {
                "choices": [{"message": {"content": content}}],
                "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
            },
        },
    })


class TestGenerateBatchJsonl:

    def test_one_line_per_row(self):
        content, mappings = generate_batch_jsonl([("r1", "p1"), ("r2", "p2")], deployment="dep", max_completion_tokens=100)
        lines = [json.loads(line) for line in content.splitlines()]
        assert [line["custom_id"] for line in lines] == ["row-r1", "row-r2"]
        assert lines[0]["url"] == BATCH_ENDPOINT
        assert lines[0]["body"]["model"] == "dep"
        assert lines[0]["body"]["messages"] == [{"role": "user", "content": "p1"}]
        assert lines[0]["body"]["max_completion_tokens"] == 100
        assert mappings == [{"rowId": "r1", "customId": "row-r1"}, {"rowId": "r2", "customId": "row-r2"}]


class TestParseBatchResults:

    def test_success_line(self):
        [line] = parse_batch_results(result_line("row-1", content='{"a": 1}'))
        assert line.custom_id == "row-1"
        assert line.text == '{"a": 1}'
        assert (line.input_tokens, line.output_tokens) == (10, 5)
        assert line.error is None

    def test_error_object(self):
        content = json.dumps({"custom_id": "row-2", "error": {"code": "bad", "message": "Bad request"}})
        [line] = parse_batch_results(content)
        assert line.error == "Bad request"

    def test_http_error_status(self):
        content = json.dumps({
            "custom_id": "row-3",
            "response": {"status_code": 429, "body": {"error": {"message": "Rate limited"}}},
        })
        [line] = parse_batch_results(content)
        assert line.error == "Rate limited"

    def test_malformed_lines_are_skipped(self):
        content = "\n".join(["not json", "", result_line("row-4"), "[1,2]"])
        results = parse_batch_results(content)
        assert [r.custom_id for r in results] == ["row-4"]


def test_batch_cost_is_discounted():
    assert calculate_batch_cost(1_000_000, 1_000_000) == pytest.approx(0.375)


class TestAzureBatchService:

    def test_client_is_rebuilt_for_each_event_loop(self, monkeypatch):
        from config import settings

        monkeypatch.setattr(settings, "AZURE_BATCH_ENDPOINT", "https://example.openai.azure.com/")
        monkeypatch.setattr(settings, "AZURE_BATCH_API_KEY", "key")
        created = []

        def make_client(**kwargs):
            client = MagicMock()
            client.files.delete = AsyncMock(return_value=None)
            created.append(client)
            return client

        monkeypatch.setattr("services.batch_provider.AsyncAzureOpenAI", make_client)
        service = AzureBatchService()

        async def cleanup():
            assert await service.delete_file("file-1") is True
            assert await service.delete_file("file-2") is True

        asyncio.run(cleanup())
        asyncio.run(cleanup())

        assert len(created) == 2
        assert created[1].files.delete.await_count == 2
