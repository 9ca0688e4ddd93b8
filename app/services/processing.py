from __future__ import annotations

import asyncio
import logging
import time

import httpx
from fastapi.concurrency import run_in_threadpool

from app.services import settings
from app.services.answer_key_utils import (
    STOP_TOKEN,
    detect_question_types,
    extract_question_numbers,
    finalize_answer_key,
    format_answer_key,
    low_confidence_numbers,
    parse_answer_lines,
    tally_votes,
)
from app.services.image_utils import decode_uploaded_file, image_to_data_url, parse_data_url, shrink_data_url
from app.services.ocr_space import OcrResult, recognize
from app.services.openrouter import Completion, CompletionError, complete
from app.services.prompts import build_messages

logger = logging.getLogger(__name__)


class NoQuestionsFound(ValueError):
    def __init__(self, page: int, raw_numbers: list[str]):
        super().__init__("No question numbers detected in text")
        self.page = page
        self.raw_numbers = raw_numbers


def _phase_row(name: str, seconds: float, total_seconds: float) -> dict:
    ms = round(max(0.0, seconds) * 1000.0, 2)
    pct = round((seconds / total_seconds) * 100.0, 2) if total_seconds > 0 else 0.0
    return {"name": name, "ms": ms, "pct": pct}


def _build_solve_analysis_log(analysis: dict) -> str:
    lines = [
        "Answer-Key Solve Analysis",
        "=========================",
        f"Total time: {analysis['total_ms']} ms",
        "",
        "Phase Breakdown:",
    ]
    for phase in analysis.get("phases", []):
        lines.append(f"- {phase['name']}: {phase['ms']} ms ({phase['pct']}%)")

    meta = analysis.get("meta", {})
    lines.extend(
        [
            "",
            "Run Metadata:",
            f"- questions: {meta.get('questions', 0)}",
            f"- roles_requested: {meta.get('roles_requested', 0)}",
            f"- roles_answered: {meta.get('roles_answered', 0)}",
            f"- fallback_answers: {meta.get('fallback_answers', 0)}",
            f"- low_confidence: {meta.get('low_confidence', 0)}",
        ]
    )
    return "\n".join(lines)


def validate_roles(roles: list[str] | None) -> list[str]:
    if not roles:
        return settings.get_solve_roles()
    cleaned: list[str] = []
    for role in roles:
        value = str(role).strip().lower()
        if value not in settings.DEFAULT_ROLES:
            raise ValueError(
                f"Unknown role '{role}'. Valid roles: {', '.join(settings.DEFAULT_ROLES)}"
            )
        if value not in cleaned:
            cleaned.append(value)
    return cleaned


async def process_ocr(client: httpx.AsyncClient, image: str, page: int = 1) -> OcrResult:
    parse_data_url(image)
    payload = await run_in_threadpool(shrink_data_url, image.strip(), settings.get_ocr_max_image_bytes())
    return await recognize(client, payload, page=page)


async def process_upload(
    client: httpx.AsyncClient, raw: bytes, content_type: str | None, page: int = 1
) -> OcrResult:
    image = await run_in_threadpool(decode_uploaded_file, raw, content_type, page=page)
    data_url = await run_in_threadpool(image_to_data_url, image, settings.get_ocr_max_image_bytes())
    return await recognize(client, data_url, page=page)


async def _run_role(client: httpx.AsyncClient, text: str, numbers: list[int], role: str) -> Completion:
    return await complete(client, build_messages(text, numbers, role))


async def solve_page(
    client: httpx.AsyncClient,
    text: str,
    page: int = 1,
    roles: list[str] | None = None,
) -> dict:
    """Solve one OCR'd exam page with a fixed ensemble of role prompts.

    Every role runs concurrently; roles that fail are reported in the debug
    payload and the vote proceeds with the rest. Raises ``NoQuestionsFound``
    when the text has no recognizable question numbers and
    ``CompletionError`` when no role produced a completion.
    """
    started = time.perf_counter()
    phase_seconds: dict[str, float] = {}
    roles = validate_roles(roles)
    settings.get_openrouter_api_key()

    phase_start = time.perf_counter()
    raw_numbers, numbers = extract_question_numbers(text, settings.get_max_question_number())
    if not numbers:
        raise NoQuestionsFound(page, raw_numbers)
    question_types = detect_question_types(text, numbers)
    phase_seconds["question_extraction"] = time.perf_counter() - phase_start

    phase_start = time.perf_counter()
    results = await asyncio.gather(
        *(_run_role(client, text, numbers, role) for role in roles),
        return_exceptions=True,
    )
    phase_seconds["role_completions"] = time.perf_counter() - phase_start

    phase_start = time.perf_counter()
    responses = []
    role_debug: dict[str, dict] = {}
    errors: list[str] = []
    for role, result in zip(roles, results):
        if isinstance(result, CompletionError):
            errors.extend(result.errors)
            role_debug[role] = {"error": str(result), "attempts": result.errors}
            continue
        if isinstance(result, BaseException):
            raise result

        parsed = parse_answer_lines(result.text, numbers, role=role)
        responses.append(parsed)
        role_debug[role] = {
            "model": result.model,
            "finishReason": result.finish_reason,
            "attempts": result.attempts,
            "parsed": {str(q): option for q, option in sorted(parsed.answers.items())},
            "abstained": sorted(parsed.abstained),
            "unsure": sorted(parsed.unsure),
            "extras": parsed.extras,
            "raw": result.text,
        }

    if not responses:
        raise CompletionError("Every role completion failed", errors=errors)

    tallies = tally_votes(responses, numbers, question_types)
    entries = finalize_answer_key(tallies)
    answer_text = format_answer_key(entries)
    unsure = low_confidence_numbers(entries)
    phase_seconds["vote_and_finalize"] = time.perf_counter() - phase_start

    total_seconds = time.perf_counter() - started
    analysis = {
        "total_ms": round(total_seconds * 1000.0, 2),
        "phases": [
            _phase_row(name, phase_seconds.get(name, 0.0), total_seconds)
            for name in ("question_extraction", "role_completions", "vote_and_finalize")
        ],
        "meta": {
            "questions": len(numbers),
            "roles_requested": len(roles),
            "roles_answered": len(responses),
            "fallback_answers": sum(1 for entry in entries if entry["fallback"]),
            "low_confidence": len(unsure),
        },
    }
    logger.info(
        "Solved page %s: %d questions, %d/%d roles, %d low-confidence",
        page,
        len(numbers),
        len(responses),
        len(roles),
        len(unsure),
    )

    return {
        "ok": True,
        "page": page,
        "text": answer_text,
        "answers": entries,
        "unsure": unsure,
        "debug": {
            "rawNumbers": raw_numbers,
            "normalizedNumbers": numbers,
            "questionTypes": {str(q): q_type for q, q_type in question_types.items()},
            "roles": role_debug,
            "analysis": analysis,
            "analysis_log": _build_solve_analysis_log(analysis),
        },
    }


async def solve_page_debug(client: httpx.AsyncClient, text: str, page: int = 1) -> dict:
    settings.get_openrouter_api_key()
    raw_numbers, numbers = extract_question_numbers(text, settings.get_max_question_number())
    if not numbers:
        raise NoQuestionsFound(page, raw_numbers)

    completion = await complete(client, build_messages(text, numbers, "general"))
    return {
        "ok": True,
        "text": completion.text,
        "debug": {
            "page": page,
            "rawNumbers": raw_numbers,
            "normalizedNumbers": numbers,
            "numbersForPrompt": numbers,
            "stopToken": STOP_TOKEN,
            "model": completion.model,
            "finishReason": completion.finish_reason,
        },
    }
