import os

DEFAULT_OCR_PRIMARY = "https://apipro1.ocr.space/parse/image"
DEFAULT_OCR_BACKUP = "https://apipro2.ocr.space/parse/image"
DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "openai/gpt-4o-mini"
DEFAULT_ROLES = ("lexical", "logic", "reading", "grammar")


class ConfigError(RuntimeError):
    """Raised when a required vendor setting is missing."""


def _str_env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _int_env(name: str, default: int, minimum: int | None = None, maximum: int | None = None) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if minimum is not None and value < minimum:
        return default
    if maximum is not None and value > maximum:
        return default
    return value


def _list_env(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_cors_origins() -> list[str]:
    return _list_env("CORS_ORIGINS", "*") or ["*"]


def get_log_level() -> str:
    level = _str_env("LOG_LEVEL", "INFO").upper()
    return level if level in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO"


def get_ocr_api_key() -> str:
    key = _str_env("OCR_SPACE_API_KEY")
    if not key:
        raise ConfigError("OCR_SPACE_API_KEY is not set on the server")
    return key


def get_ocr_endpoints() -> tuple[str, str]:
    primary = _str_env("OCR_SPACE_API_ENDPOINT") or DEFAULT_OCR_PRIMARY
    backup = _str_env("OCR_SPACE_API_ENDPOINT_BACKUP") or DEFAULT_OCR_BACKUP
    return primary, backup


def get_ocr_timeout_seconds() -> float:
    timeout_ms = _int_env("OCR_SPACE_TIMEOUT_MS", 30000, minimum=1)
    return max(5000, timeout_ms) / 1000.0


def get_ocr_max_tries() -> int:
    return _int_env("OCR_SPACE_MAX_TRIES", 3, minimum=1, maximum=10)


def get_ocr_retry_delay_seconds() -> float:
    return _int_env("OCR_SPACE_RETRY_DELAY_MS", 350, minimum=0) / 1000.0


def get_ocr_language() -> str:
    return _str_env("OCR_SPACE_LANGUAGE", "eng") or "eng"


def get_ocr_engine() -> str:
    return str(_int_env("OCR_SPACE_ENGINE", 2, minimum=1, maximum=3))


def get_ocr_max_image_bytes() -> int:
    return _int_env("OCR_SPACE_MAX_IMAGE_BYTES", 5_000_000, minimum=10_000)


def get_openrouter_api_key() -> str:
    key = _str_env("OPENROUTER_API_KEY")
    if not key:
        raise ConfigError("OPENROUTER_API_KEY is not set")
    return key


def get_openrouter_base_urls() -> list[str]:
    primary = (_str_env("OPENROUTER_BASE_URL") or DEFAULT_OPENROUTER_BASE_URL).rstrip("/")
    backup = _str_env("OPENROUTER_BASE_URL_BACKUP").rstrip("/")
    urls = [primary]
    if backup and backup != primary:
        urls.append(backup)
    return urls


def get_openrouter_models() -> list[str]:
    primary = _str_env("OPENROUTER_MODEL") or DEFAULT_MODEL
    models = [primary]
    for model in _list_env("OPENROUTER_FALLBACK_MODELS"):
        if model not in models:
            models.append(model)
    return models


def get_openrouter_timeout_seconds() -> float:
    return _int_env("OPENROUTER_TIMEOUT_MS", 60000, minimum=1000) / 1000.0


def get_openrouter_max_retries() -> int:
    return _int_env("OPENROUTER_MAX_RETRIES", 3, minimum=1, maximum=10)


def get_openrouter_retry_delay_seconds() -> float:
    return _int_env("OPENROUTER_RETRY_DELAY_MS", 800, minimum=0) / 1000.0


def get_openrouter_max_tokens() -> int:
    return _int_env("OPENROUTER_MAX_TOKENS", 512, minimum=16)


def get_openrouter_headers() -> dict[str, str]:
    headers = {"X-Title": _str_env("OPENROUTER_APP_TITLE", "exam-answer-service") or "exam-answer-service"}
    site_url = _str_env("OPENROUTER_SITE_URL")
    if site_url:
        headers["HTTP-Referer"] = site_url
    return headers


def get_solve_roles() -> list[str]:
    roles = [role.lower() for role in _list_env("SOLVE_ROLES")]
    known = [role for role in roles if role in DEFAULT_ROLES]
    return known or list(DEFAULT_ROLES)


def get_max_question_number() -> int:
    return _int_env("SOLVE_MAX_QUESTION_NUMBER", 50, minimum=1, maximum=99)
