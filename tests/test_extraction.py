from __future__ import annotations

import base64
import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List

import httpx
import pytest
import requests

from batchcheck.domain.models import BatchReading
from batchcheck.productdb import extraction
from batchcheck.productdb.extraction import VisionExtractor, parse_model_reply


class _Resp:
    def __init__(self, payload: Dict[str, Any], status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code
        self.text = json.dumps(payload)

    def json(self) -> Dict[str, Any]:
        return self._payload


def test_parse_model_reply_accepts_plain_fenced_and_chatty_json() -> None:
    assert parse_model_reply('{"barcode": "123"}') == {"barcode": "123"}
    assert parse_model_reply('```json\n{"barcode": "456"}\n```') == {"barcode": "456"}
    assert parse_model_reply('Sure! Here it is: {"batchNumber": "A1"} hope that helps') == {"batchNumber": "A1"}
    assert parse_model_reply("no json here") is None
    assert parse_model_reply("") is None
    assert parse_model_reply("[1, 2]") is None


@pytest.fixture
def ollama_calls(monkeypatch: pytest.MonkeyPatch) -> List[Dict[str, Any]]:
    monkeypatch.setenv("OLLAMA_URL", "http://ollama.test:11434")
    monkeypatch.setenv("OLLAMA_MODEL", "vision-test")
    return []


def test_ollama_barcode_extraction(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, ollama_calls) -> None:
    def fake_post(url, json=None, timeout=None):
        ollama_calls.append({"url": url, "json": json})
        return _Resp({"message": {"content": '{"barcode": "890 1234 567890"}'}})

    monkeypatch.setattr(extraction.requests, "post", fake_post)
    ex = VisionExtractor("ollama", script_dir=str(tmp_path))

    assert ex.extract_barcode(b"img", "image/png") == "8901234567890"
    call = ollama_calls[0]
    assert call["url"] == "http://ollama.test:11434/api/chat"
    assert call["json"]["model"] == "vision-test"
    assert call["json"]["format"] == "json"
    assert call["json"]["messages"][-1]["images"] == ["aW1n"]


def test_ollama_batch_extraction_reads_optional_fields(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, ollama_calls) -> None:
    content = {"batchNumber": " 08:30 42B11 ", "productionDate": "", "expiryDate": "04/2026", "price": 45}
    reply = json.dumps(content)

    def fake_post(url, json=None, timeout=None):
        return _Resp({"message": {"content": reply}})

    monkeypatch.setattr(extraction.requests, "post", fake_post)
    reading = VisionExtractor("ollama", script_dir=str(tmp_path)).extract_batch(b"img", "image/jpeg")

    assert reading.batch_number == "08:30 42B11"
    assert reading.production_date is None
    assert reading.expiry_date == "04/2026"
    assert reading.price == "45"


def test_ollama_failures_yield_empty_values(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, ollama_calls) -> None:
    def broken_post(url, json=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(extraction.requests, "post", broken_post)
    ex = VisionExtractor("ollama", script_dir=str(tmp_path))
    assert ex.extract_barcode(b"img", "image/png") == ""

    monkeypatch.setattr(extraction.requests, "post", lambda *a, **k: _Resp({"error": "model not found"}, 404))
    assert ex.extract_batch(b"img", "image/png").batch_number == ""


def test_openai_without_api_key_returns_nothing(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    ex = VisionExtractor("openai", script_dir=str(tmp_path))
    assert ex.extract_barcode(b"img", "image/png") == ""


class _FakeOpenAI:
    """Stands in for ``openai.OpenAI``; records constructor and create() kwargs."""

    instances: List["_FakeOpenAI"] = []
    reply: Any = None

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.calls: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))
        _FakeOpenAI.instances.append(self)

    def _create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if isinstance(self.reply, Exception):
            raise self.reply
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(id="chatcmpl-test", choices=[SimpleNamespace(message=message)], usage=None)


@pytest.fixture
def fake_openai(monkeypatch: pytest.MonkeyPatch) -> type:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.delenv("OPENAI_BASE_URL", raising=False)
    monkeypatch.delenv("BATCHCHECK_OPENAI_MODEL", raising=False)
    _FakeOpenAI.instances = []
    _FakeOpenAI.reply = None
    monkeypatch.setattr(extraction, "OpenAI", _FakeOpenAI)
    return _FakeOpenAI


def test_openai_barcode_extraction_sends_data_url_in_json_mode(tmp_path: Path, fake_openai) -> None:
    fake_openai.reply = '{"barcode": "8901 2345 67890"}'
    ex = VisionExtractor("openai", script_dir=str(tmp_path))

    assert ex.extract_barcode(b"\x89PNG", "image/png") == "8901234567890"

    (client,) = fake_openai.instances
    assert client.kwargs["api_key"] == "sk-test"
    assert client.kwargs["max_retries"] == 0
    (call,) = client.calls
    assert call["model"] == "gpt-4o-mini"
    assert call["response_format"] == {"type": "json_object"}
    assert call["temperature"] == 0
    system, user = call["messages"]
    assert system["role"] == "system"
    assert user["role"] == "user"
    text_part, image_part = user["content"]
    assert text_part == {"type": "text", "text": extraction.BARCODE_PROMPT}
    expected_url = "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode("ascii")
    assert image_part == {"type": "image_url", "image_url": {"url": expected_url}}


def test_openai_batch_extraction_parses_reading(tmp_path: Path, fake_openai) -> None:
    fake_openai.reply = '```json\n{"batchNumber": "14:35 07A11", "expiryDate": "2025-06-01", "price": "45.00"}\n```'
    ex = VisionExtractor("openai", script_dir=str(tmp_path))

    reading = ex.extract_batch(b"jpeg-bytes", "image/jpeg")

    assert reading == BatchReading(batch_number="14:35 07A11", production_date=None, expiry_date="2025-06-01", price="45.00")
    (call,) = fake_openai.instances[0].calls
    assert call["messages"][1]["content"][0]["text"] == extraction.BATCH_PROMPT
    assert call["messages"][1]["content"][1]["image_url"]["url"].startswith("data:image/jpeg;base64,")


def test_openai_transport_and_status_errors_yield_empty_values(tmp_path: Path, fake_openai) -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    ex = VisionExtractor("openai", script_dir=str(tmp_path))

    fake_openai.reply = extraction.APIConnectionError(request=request)
    assert ex.extract_barcode(b"img", "image/png") == ""

    response = httpx.Response(500, request=request, text="upstream exploded")
    fake_openai.reply = extraction.APIStatusError("Server error", response=response, body=None)
    assert ex.extract_batch(b"img", "image/png").batch_number == ""
