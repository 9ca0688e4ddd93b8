from collections.abc import AsyncIterator

import httpx
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from app.services.image_utils import InvalidImageError
from app.services.ocr_space import UPSTREAM_HINT, OcrUpstreamError
from app.services.openrouter import CompletionError
from app.services.processing import (
    NoQuestionsFound,
    process_ocr,
    process_upload,
    solve_page,
    solve_page_debug,
)
from app.services.settings import ConfigError

router = APIRouter()


class OcrRequest(BaseModel):
    image: str | None = None
    dataUrl: str | None = None
    base64Image: str | None = None
    page: int = 1

    def data_url(self) -> str:
        return (self.image or self.dataUrl or self.base64Image or "").strip()


class SolveRequest(BaseModel):
    text: str = ""
    page: int = 1
    roles: list[str] | None = None


async def get_http_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient() as client:
        yield client


def _config_error(exc: ConfigError) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={"ok": False, "errorType": "ConfigError", "error": str(exc)},
    )


def _ocr_upstream_error(exc: OcrUpstreamError) -> HTTPException:
    return HTTPException(
        status_code=502,
        detail={
            "ok": False,
            "error": "OCR.Space upstream error",
            "detail": str(exc),
            "raw": exc.raw,
            "endpoint": exc.endpoint,
            "attempts": exc.attempts,
            "hint": UPSTREAM_HINT,
        },
    )


def _no_questions(exc: NoQuestionsFound) -> dict:
    return {
        "ok": False,
        "errorType": "NoQuestionsFound",
        "errorMessage": str(exc),
        "debug": {"page": exc.page, "rawNumbers": exc.raw_numbers, "normalizedNumbers": []},
    }


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/api/ocr")
async def ocr_page(payload: OcrRequest, client: httpx.AsyncClient = Depends(get_http_client)) -> dict:
    try:
        result = await process_ocr(client, payload.data_url(), page=payload.page)
    except InvalidImageError as exc:
        raise HTTPException(status_code=400, detail={"ok": False, "error": str(exc)}) from exc
    except ConfigError as exc:
        raise _config_error(exc) from exc
    except OcrUpstreamError as exc:
        raise _ocr_upstream_error(exc) from exc
    return result.to_response()


@router.post("/api/ocr/upload")
async def ocr_upload(
    file: UploadFile = File(...),
    page: int = Form(1),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> dict:
    raw = await file.read()
    try:
        result = await process_upload(client, raw, file.content_type, page=page)
    except InvalidImageError as exc:
        raise HTTPException(
            status_code=400, detail={"ok": False, "error": f"Image decode failed: {exc}"}
        ) from exc
    except ConfigError as exc:
        raise _config_error(exc) from exc
    except OcrUpstreamError as exc:
        raise _ocr_upstream_error(exc) from exc

    response = result.to_response()
    response["source_filename"] = file.filename
    return response


@router.post("/api/solve")
async def solve(payload: SolveRequest, client: httpx.AsyncClient = Depends(get_http_client)) -> dict:
    if not payload.text.strip():
        raise HTTPException(
            status_code=400,
            detail={"ok": False, "errorType": "BadRequest", "error": "Missing 'text' field in body"},
        )
    try:
        return await solve_page(client, payload.text, page=payload.page, roles=payload.roles)
    except NoQuestionsFound as exc:
        return _no_questions(exc)
    except ConfigError as exc:
        raise _config_error(exc) from exc
    except CompletionError as exc:
        raise HTTPException(
            status_code=502,
            detail={
                "ok": False,
                "errorType": "CompletionError",
                "error": str(exc),
                "attempts": exc.errors,
            },
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail={"ok": False, "errorType": "BadRequest", "error": str(exc)}
        ) from exc


@router.post("/api/solve/debug")
async def solve_debug(payload: SolveRequest, client: httpx.AsyncClient = Depends(get_http_client)) -> dict:
    if not payload.text.strip():
        raise HTTPException(
            status_code=400,
            detail={"ok": False, "errorType": "BadRequest", "error": "Missing 'text' field in body"},
        )
    try:
        return await solve_page_debug(client, payload.text, page=payload.page)
    except NoQuestionsFound as exc:
        return _no_questions(exc)
    except ConfigError as exc:
        raise _config_error(exc) from exc
    except CompletionError as exc:
        raise HTTPException(
            status_code=502,
            detail={
                "ok": False,
                "errorType": "CompletionError",
                "error": str(exc),
                "attempts": exc.errors,
            },
        ) from exc
