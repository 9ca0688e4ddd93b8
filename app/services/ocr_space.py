from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field

import httpx

from app.services import settings

logger = logging.getLogger(__name__)

HITS_RE = re.compile(r"\b(\d{1,2})\b[.)\s]", re.ASCII)
LINE_NUMBER_RE = re.compile(r"(^|\n)\s*\d{1,2}\s*[.)]", re.ASCII)
RAW_PREVIEW_CHARS = 1500
UPSTREAM_HINT = (
    "1) PRO keys must use https://apipro1.ocr.space/parse/image (no hyphen). "
    "2) Check OCR_SPACE_API_KEY / OCR_SPACE_API_ENDPOINT and redeploy."
)


class OcrUpstreamError(RuntimeError):
    def __init__(self, message: str, endpoint: str = "", raw: str = "", attempts: int = 0):
        super().__init__(message)
        self.endpoint = endpoint
        self.raw = raw[:RAW_PREVIEW_CHARS]
        self.attempts = attempts


@dataclass
class OcrResult:
    text: str
    page: int
    endpoint: str
    from_backup: bool
    attempts: int
    meta: dict = field(default_factory=dict)

    @property
    def hits(self) -> int:
        return count_question_patterns(self.text)

    def to_response(self) -> dict:
        return {
            "ok": True,
            "text": self.text,
            "page": self.page,
            "conf": self.meta.get("meanConfidence", 0),
            "hits": self.hits,
            "endpoint": self.endpoint,
            "fromBackup": self.from_backup,
            "attempts": self.attempts,
            "meta": self.meta,
        }


def normalize_endpoint(url: str | None) -> str:
    if not url:
        return ""
    value = str(url).strip()
    # Common typo: the PRO hosts have no hyphen.
    value = value.replace("://api-pro1.ocr.space", "://apipro1.ocr.space")
    value = value.replace("://api-pro2.ocr.space", "://apipro2.ocr.space")
    return value


def count_question_patterns(text: str | None) -> int:
    if not text:
        return 0
    return len(HITS_RE.findall(str(text)))


def _error_reason(payload: dict) -> str:
    message = payload.get("ErrorMessage")
    if isinstance(message, list):
        message = "; ".join(str(item) for item in message if item)
    return str(message or payload.get("ErrorDetails") or "OCR.Space reported an error")


def extract_ocr_result(payload: dict | None) -> dict:
    """Pull text and confidence metadata out of an OCR.Space JSON body.

    Returns ``{"ok": False, "reason": ...}`` when the vendor flagged the
    request as failed or ``ParsedResults`` is not a list of objects, otherwise ``{"ok": True, "text": ..., "meta": {...}}``.
    """
    if not isinstance(payload, dict):
        return {"ok": False, "reason": "No JSON"}

    exit_code = payload.get("OCRExitCode")
    is_errored = bool(payload.get("IsErroredOnProcessing"))
    if exit_code != 1 or is_errored:
        return {
            "ok": False,
            "reason": _error_reason(payload),
            "exitCode": exit_code,
            "isErroredOnProcessing": is_errored,
        }

    results = payload.get("ParsedResults") or []
    if not isinstance(results, list) or not all(isinstance(item, dict) for item in results):
        return {
            "ok": False,
            "reason": "Failed to parse OCR result: malformed ParsedResults",
            "exitCode": exit_code,
            "isErroredOnProcessing": is_errored,
        }
    texts = [str(item.get("ParsedText")) for item in results if item.get("ParsedText") is not None]
    text = "\n".join(value for value in texts if value).strip()

    confidences = [
        float(item["Confidence"])
        for item in results
        if isinstance(item.get("ParsedText"), str)
        and isinstance(item.get("Confidence"), (int, float))
        and not isinstance(item.get("Confidence"), bool)
    ]
    mean_confidence = sum(confidences) / len(confidences) if confidences else 0

    return {
        "ok": True,
        "text": text,
        "meta": {
            "meanConfidence": mean_confidence,
            "questionNumberCount": len(LINE_NUMBER_RE.findall(text)),
            "ocrExitCode": exit_code,
            "isErroredOnProcessing": is_errored,
            "processingTimeInMilliseconds": payload.get("ProcessingTimeInMilliseconds"),
        },
    }


def build_form(api_key: str, image_data_url: str) -> dict[str, str]:
    return {
        "apikey": api_key,
        "language": settings.get_ocr_language(),
        "isOverlayRequired": "false",
        "scale": "true",
        "detectOrientation": "true",
        "OCREngine": settings.get_ocr_engine(),
        "base64Image": image_data_url,
    }


def _endpoint_list() -> list[str]:
    endpoints: list[str] = []
    for url in settings.get_ocr_endpoints():
        normalized = normalize_endpoint(url)
        if normalized and normalized not in endpoints:
            endpoints.append(normalized)
    return endpoints


async def recognize(client: httpx.AsyncClient, image_data_url: str, page: int = 1) -> OcrResult:
    api_key = settings.get_ocr_api_key()
    endpoints = _endpoint_list()
    max_tries = settings.get_ocr_max_tries()
    delay = settings.get_ocr_retry_delay_seconds()
    timeout = settings.get_ocr_timeout_seconds()
    form = build_form(api_key, image_data_url)

    last_error = ""
    last_raw = ""
    endpoint_used = ""
    attempts = 0

    for ep_idx, endpoint in enumerate(endpoints):
        endpoint_used = endpoint
        for attempt in range(max_tries):
            attempts += 1
            try:
                response = await client.post(endpoint, data=form, timeout=timeout)
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                last_raw = response.text
                try:
                    payload = response.json()
                except ValueError:
                    payload = None

                if response.is_error:
                    last_error = f"OCR.Space HTTP {response.status_code}"
                    if isinstance(payload, dict):
                        last_error += f" / {_error_reason(payload)}"
                elif payload is None:
                    last_error = "OCR.Space returned non-JSON"
                else:
                    extracted = extract_ocr_result(payload)
                    if extracted["ok"]:
                        logger.info(
                            "OCR page %s ok via %s (attempt %d, %d chars)",
                            page,
                            endpoint,
                            attempts,
                            len(extracted["text"]),
                        )
                        return OcrResult(
                            text=extracted["text"],
                            page=page,
                            endpoint=endpoint,
                            from_backup=ep_idx > 0,
                            attempts=attempts,
                            meta=extracted["meta"],
                        )
                    last_error = extracted["reason"]

            logger.warning(
                "OCR attempt %d/%d on %s failed: %s", attempt + 1, max_tries, endpoint, last_error
            )
            if attempt < max_tries - 1:
                await asyncio.sleep(delay * (attempt + 1))

    raise OcrUpstreamError(
        last_error or "Unknown",
        endpoint=endpoint_used,
        raw=last_raw,
        attempts=attempts,
    )
