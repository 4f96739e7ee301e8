from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple
import logging
import os

from dotenv import load_dotenv


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _parse_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer.") from exc


def _parse_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number.") from exc


def _parse_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = _env(name)
    if raw is None:
        return default
    items = tuple(item.strip().lower() for item in raw.split(",") if item.strip())
    if not items:
        raise RuntimeError(f"{name} must be a comma-separated list.")
    return items


def load_env() -> Optional[Path]:
    env_file = os.environ.get("OMR_ENV_FILE")
    if not env_file:
        return None

    path = Path(env_file)
    if not path.is_absolute():
        repo_root = Path(__file__).resolve().parents[1]
        path = repo_root / env_file

    if not path.exists():
        raise RuntimeError(f"OMR_ENV_FILE not found: {path}")

    load_dotenv(path)
    return path


@dataclass(frozen=True)
class Settings:
    port: int
    log_level: str
    max_upload_bytes: int
    allowed_mime_types: Tuple[str, ...]
    inference_order: Tuple[str, ...]
    inference_timeout: float
    backend_concurrency: int
    code_reader: str
    gemini_api_key: Optional[str]
    gemini_model: str
    groq_api_key: Optional[str]
    groq_model: str
    openrouter_api_key: Optional[str]
    openrouter_model: str
    site_url: str


def load_settings() -> Settings:
    load_env()
    code_reader = (_env("OMR_CODE_READER", "qr") or "qr").lower()
    if code_reader not in ("qr", "none"):
        raise RuntimeError("OMR_CODE_READER must be 'qr' or 'none'.")

    concurrency = _parse_int("OMR_BACKEND_CONCURRENCY", 4)
    if concurrency < 1:
        raise RuntimeError("OMR_BACKEND_CONCURRENCY must be at least 1.")

    return Settings(
        port=_parse_int("OMR_PORT", 8000),
        log_level=(_env("OMR_LOG_LEVEL", "INFO") or "INFO").upper(),
        max_upload_bytes=_parse_int("OMR_MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
        allowed_mime_types=_parse_list("OMR_ALLOWED_MIME_TYPES", ("image/jpeg", "image/png")),
        inference_order=_parse_list("OMR_INFERENCE_ORDER", ("groq", "gemini", "openrouter")),
        inference_timeout=_parse_float("OMR_INFERENCE_TIMEOUT", 60.0),
        backend_concurrency=concurrency,
        code_reader=code_reader,
        gemini_api_key=_env("GEMINI_API_KEY"),
        gemini_model=_env("OMR_GEMINI_MODEL", "gemini-2.5-flash"),
        groq_api_key=_env("GROQ_API_KEY"),
        groq_model=_env("OMR_GROQ_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct"),
        openrouter_api_key=_env("OPENROUTER_API_KEY"),
        openrouter_model=_env("OMR_OPENROUTER_MODEL", "qwen/qwen2.5-vl-32b-instruct:free"),
        site_url=_env("OMR_SITE_URL", "http://localhost:3000"),
    )


SETTINGS = load_settings()

logging.basicConfig(
    level=getattr(logging, SETTINGS.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("bubblescan")


# ---------------------------------------------------------------------------
# Algorithm configuration. Immutable, passed explicitly into each stage.
# ---------------------------------------------------------------------------


def _check_ratio(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")


@dataclass(frozen=True)
class PreprocessConfig:
    # A4 at 300 dpi
    target_width: int = 2480
    target_height: int = 3508
    min_width: int = 800
    min_height: int = 1000
    max_bytes: int = 10 * 1024 * 1024
    allowed_mime_types: Tuple[str, ...] = ("image/jpeg", "image/png")
    enhance_contrast: bool = True
    remove_noise: bool = True
    sharpen: bool = True

    def __post_init__(self) -> None:
        if self.target_width <= 0 or self.target_height <= 0:
            raise ValueError("target dimensions must be positive")
        if self.max_bytes <= 0:
            raise ValueError("max_bytes must be positive")


@dataclass(frozen=True)
class DetectionConfig:
    fill_threshold: float = 0.6
    block_size: int = 25
    threshold_offset: float = 10.0
    # Runner-up fill above this makes a single mark "unclear".
    unclear_ratio: float = 0.45

    def __post_init__(self) -> None:
        _check_ratio("fill_threshold", self.fill_threshold)
        _check_ratio("unclear_ratio", self.unclear_ratio)
        if self.block_size < 3 or self.block_size % 2 == 0:
            raise ValueError("block_size must be an odd integer >= 3")


@dataclass(frozen=True)
class EscalationThresholds:
    min_confidence: float = 0.7
    max_issue_ratio: float = 0.3
    min_completion: float = 0.8

    def __post_init__(self) -> None:
        _check_ratio("min_confidence", self.min_confidence)
        _check_ratio("max_issue_ratio", self.max_issue_ratio)
        _check_ratio("min_completion", self.min_completion)


@dataclass(frozen=True)
class PipelineConfig:
    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    escalation: EscalationThresholds = field(default_factory=EscalationThresholds)
    min_answered_ratio: float = 0.05
    default_passing_ratio: float = 0.4

    def __post_init__(self) -> None:
        _check_ratio("min_answered_ratio", self.min_answered_ratio)
        _check_ratio("default_passing_ratio", self.default_passing_ratio)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineConfig":
        return cls(
            preprocess=PreprocessConfig(
                max_bytes=settings.max_upload_bytes,
                allowed_mime_types=settings.allowed_mime_types,
            )
        )
