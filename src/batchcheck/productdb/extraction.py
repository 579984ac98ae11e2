"""Read barcode and batch fields from package photos with a vision model.

Two backends are supported (env BATCHCHECK_BACKEND):
- "openai": Chat Completions with an inline data-URL image and JSON mode
- "ollama": local /api/chat with base64 images and ``format: json``

Extraction is best effort. Transport errors and unusable replies are logged
and surface as empty values; deciding whether that is fatal is up to the
caller.
"""

from __future__ import annotations

import base64
import json
import re
import time
from typing import Any, Dict, Optional

import httpx
import requests
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from ..config import load_backend, load_ollama, load_openai
from ..domain.models import BatchReading
from ..logging import get_logger


LOG = get_logger("productdb-extraction")

BARCODE_PROMPT = (
    "From the product package image, extract only the barcode number. "
    "The barcode may be oriented vertically or horizontally. "
    'Respond with a JSON object of the form {"barcode": "<digits>"}. '
    "If a value cannot be found, return an empty string for that key."
)

BATCH_PROMPT = (
    "From the product package image, extract the text corresponding to 'Batch No.' "
    "and, when printed, the manufacturing date, the expiry date and the MRP price. "
    'Respond with a JSON object with the keys "batchNumber", "productionDate", '
    '"expiryDate" and "price", copying the text as printed. '
    "If a value cannot be found, return an empty string for that key."
)

SYSTEM_PROMPT = (
    "You are a strict JSON generator. Output ONLY a single JSON object. "
    "No prose, no markdown fences, no trailing text."
)


def _scavenge_json(s: str) -> Optional[Dict[str, Any]]:
    """Best effort recovery of a JSON object from a chatty model reply."""
    if not s:
        return None

    candidates = []
    fenced = re.search(r"```(?:json)?\s*(.*?)```", s, re.DOTALL)
    if fenced and fenced.group(1):
        candidates.append(fenced.group(1).strip())

    start = s.find("{")
    end = s.rfind("}")
    if start != -1 and end > start:
        candidates.append(s[start : end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_model_reply(text: Optional[str]) -> Optional[Dict[str, Any]]:
    if not text:
        return None
    try:
        data = json.loads(text.strip())
    except ValueError:
        data = _scavenge_json(text)
        if data is None:
            LOG.error("Model reply is not valid JSON; first 300 chars: %r", text[:300])
    return data if isinstance(data, dict) else None


def _text(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return ""


class VisionExtractor:
    """Image-text extraction client used by the validation workflow."""

    def __init__(
        self,
        backend: Optional[str] = None,
        *,
        script_dir: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        self.script_dir = script_dir or "."
        self.backend = (backend or load_backend(self.script_dir)).lower()
        self.timeout = timeout
        LOG.info("Vision backend selected: %s", self.backend)

    # ---------------- public API ----------------
    def extract_barcode(self, image: bytes, mime_type: str) -> str:
        data = self._request_json(BARCODE_PROMPT, image, mime_type)
        barcode = _text((data or {}).get("barcode"))
        # Barcodes are digits only; drop spaces the model copies from the print.
        barcode = re.sub(r"\s+", "", barcode)
        LOG.info("Barcode extraction result: %r", barcode)
        return barcode

    def extract_batch(self, image: bytes, mime_type: str) -> BatchReading:
        data = self._request_json(BATCH_PROMPT, image, mime_type) or {}
        reading = BatchReading(
            batch_number=_text(data.get("batchNumber") or data.get("batch_number")),
            production_date=_text(data.get("productionDate")) or None,
            expiry_date=_text(data.get("expiryDate")) or None,
            price=_text(data.get("price")) or None,
        )
        LOG.info("Batch extraction result: %r", reading.batch_number)
        return reading

    # ---------------- backends ----------------
    def _request_json(self, prompt: str, image: bytes, mime_type: str) -> Optional[Dict[str, Any]]:
        b64 = base64.b64encode(image).decode("ascii")
        LOG.debug("Prepared image bytes=%s mime=%s (base64 chars=%s)", len(image), mime_type, len(b64))
        t0 = time.perf_counter()
        if self.backend == "ollama":
            data = self._ollama_json(prompt, b64)
        else:
            data = self._openai_json(prompt, f"data:{mime_type};base64,{b64}")
        LOG.debug("Extraction call finished in %.2fs (data=%s)", time.perf_counter() - t0, "ok" if data else "none")
        return data

    def _openai_json(self, prompt: str, data_url: str) -> Optional[Dict[str, Any]]:
        api_key, base_url, model = load_openai(self.script_dir)
        if not api_key:
            LOG.error("OPENAI_API_KEY missing in env/.env; cannot run extraction")
            return None

        http_client = httpx.Client(
            timeout=httpx.Timeout(connect=10.0, read=self.timeout, write=30.0, pool=10.0),
        )
        client = OpenAI(api_key=api_key, base_url=base_url, http_client=http_client, max_retries=0)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            },
        ]
        try:
            LOG.info("Calling OpenAI Chat Completions (vision) model='%s'", model)
            completion = client.chat.completions.create(
                model=model,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=0,
            )
        except (APIConnectionError, APITimeoutError) as e:
            LOG.error("Network/timeout while calling OpenAI: %s", e)
            return None
        except APIStatusError as e:
            body = getattr(getattr(e, "response", None), "text", None)
            LOG.error("OpenAI API returned %s. Body preview: %r", getattr(e, "status_code", "?"), (body[:300] if body else None))
            return None
        finally:
            http_client.close()

        choice = completion.choices[0] if completion.choices else None
        text = choice.message.content if choice and choice.message else None
        usage = getattr(completion, "usage", None)
        LOG.debug(
            "Chat completion id=%s tokens=%s",
            getattr(completion, "id", None),
            getattr(usage, "total_tokens", None),
        )
        return parse_model_reply(text)

    def _ollama_json(self, prompt: str, image_b64: str) -> Optional[Dict[str, Any]]:
        base, model = load_ollama(self.script_dir)
        endpoint = base if base.endswith("/api/chat") else base.rstrip("/") + "/api/chat"
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt, "images": [image_b64]},
            ],
            "stream": False,
            "format": "json",
            "options": {"temperature": 0},
        }
        LOG.info("Calling Ollama for extraction")
        LOG.debug("Backend=ollama model=%s endpoint=%s", model, endpoint)
        try:
            resp = requests.post(endpoint, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            LOG.error("Ollama request failed: %s", e)
            return None
        if resp.status_code >= 400:
            LOG.error("Ollama HTTP %s: %s", resp.status_code, resp.text[:500])
            return None
        try:
            data = resp.json()
        except ValueError:
            LOG.error("Ollama returned a non-JSON body: %r", resp.text[:300])
            return None
        if data.get("error"):
            LOG.error("Ollama error: %s", data.get("error"))
            return None
        content = (data.get("message") or {}).get("content") or data.get("response") or ""
        return parse_model_reply(content)
