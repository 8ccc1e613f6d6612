from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import List, Optional

import yaml

from shelfscan.core.matching import ScoringConfig
from shelfscan.integrations.http_client import attempt_timeout_s


def _strip_inline_comment(val: str) -> str:
    in_single = False
    in_double = False
    for i, ch in enumerate(val):
        if ch == "'" and not in_double:
            in_single = not in_single
            continue
        if ch == '"' and not in_single:
            in_double = not in_double
            continue
        if ch == "#" and not in_single and not in_double:
            return val[:i].rstrip()
    return val.rstrip()


def _parse_env_file(path: Path) -> None:
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        k, v = line.split("=", 1)
        k = k.strip()
        v = _strip_inline_comment(v.strip())
        if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
            v = v[1:-1]
        if k and k not in os.environ:
            os.environ[k] = v


def load_dotenv(path: str = ".env") -> Optional[str]:
    """
    Loads environment variables from a .env file without overriding
    variables that are already set.

    Search order:
    1) ENV_PATH (if set)
    2) explicit `path` as provided (relative to CWD or absolute)
    3) project root (parent of the shelfscan package directory)
    4) current working directory

    Returns the resolved .env path used, or None if not found.
    """
    override = os.getenv("ENV_PATH")
    candidates: List[Path] = []
    if override:
        candidates.append(Path(override).expanduser())

    p = Path(path).expanduser()
    candidates.append(p if p.is_absolute() else (Path.cwd() / p))

    pkg_dir = Path(__file__).resolve().parent
    candidates.append(pkg_dir.parent / ".env")
    candidates.append(Path.cwd() / ".env")

    seen = set()
    for c in candidates:
        c = c.resolve()
        if str(c) in seen:
            continue
        seen.add(str(c))
        if c.exists() and c.is_file():
            _parse_env_file(c)
            return str(c)

    return None


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_opt(name: str) -> Optional[str]:
    return _env_str(name) or None


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise SystemExit(f"{name} must be an integer (got {raw!r})") from e


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise SystemExit(f"{name} must be a number (got {raw!r})") from e


@dataclass
class AppConfig:
    aws_region: str

    results_bucket: Optional[str]
    results_dir: str

    textract_queue_url: Optional[str]
    bedrock_queue_url: Optional[str]
    validation_queue_url: Optional[str]
    notify_queue_url: Optional[str]
    dead_letter_queue_url: Optional[str]
    sns_topic_arn: Optional[str]
    dynamodb_table: Optional[str]
    websocket_endpoint: Optional[str]

    bedrock_model_id: str
    bedrock_max_tokens: int
    malformed_retries: int
    min_line_confidence: float

    google_books_api_key: Optional[str]
    enable_google_books: bool
    enable_openlibrary: bool
    provider_rate_per_sec: float
    provider_burst: int
    provider_max_concurrent: int
    provider_timeout_s: float
    provider_retries: int
    provider_max_results: int
    candidate_concurrency: int

    max_attempts: int
    retry_backoff_s: float
    visibility_ocr_s: int
    visibility_segment_s: int
    visibility_validate_s: int
    visibility_notify_s: int

    connection_ttl_s: int
    notify_lookup_attempts: int
    notify_lookup_backoff_s: float

    scoring: ScoringConfig

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            aws_region=_env_str("AWS_REGION", "ap-southeast-2"),
            results_bucket=_env_opt("RESULTS_BUCKET_NAME"),
            results_dir=_env_str("RESULTS_DIR", "results"),
            textract_queue_url=_env_opt("TEXTRACT_QUEUE_URL"),
            bedrock_queue_url=_env_opt("BEDROCK_QUEUE_URL"),
            validation_queue_url=_env_opt("VALIDATION_QUEUE_URL"),
            notify_queue_url=_env_opt("NOTIFY_QUEUE_URL"),
            dead_letter_queue_url=_env_opt("DEAD_LETTER_QUEUE_URL"),
            sns_topic_arn=_env_opt("SNS_TOPIC_ARN"),
            dynamodb_table=_env_opt("DYNAMODB_TABLE_NAME"),
            websocket_endpoint=_env_opt("WEBSOCKET_API_ENDPOINT"),
            bedrock_model_id=_env_str("BEDROCK_MODEL_ID", "anthropic.claude-3-haiku-20240307-v1:0"),
            bedrock_max_tokens=_env_int("BEDROCK_MAX_TOKENS", 1000),
            malformed_retries=_env_int("SEGMENT_MALFORMED_RETRIES", 1),
            min_line_confidence=_env_float("OCR_MIN_LINE_CONFIDENCE", 0.0),
            google_books_api_key=_env_opt("GOOGLE_BOOKS_API_KEY"),
            enable_google_books=_env_str("ENABLE_GOOGLE_BOOKS", "1") not in ("0", "false", "no"),
            enable_openlibrary=_env_str("ENABLE_OPENLIBRARY", "1") not in ("0", "false", "no"),
            provider_rate_per_sec=_env_float("PROVIDER_RATE_PER_SEC", 2.0),
            provider_burst=_env_int("PROVIDER_BURST", 4),
            provider_max_concurrent=_env_int("PROVIDER_MAX_CONCURRENT", 4),
            provider_timeout_s=_env_float("PROVIDER_TIMEOUT_S", 8.0),
            provider_retries=_env_int("PROVIDER_RETRIES", 1),
            provider_max_results=_env_int("PROVIDER_MAX_RESULTS", 5),
            candidate_concurrency=_env_int("CANDIDATE_CONCURRENCY", 4),
            max_attempts=_env_int("STAGE_MAX_ATTEMPTS", 3),
            retry_backoff_s=_env_float("STAGE_RETRY_BACKOFF_S", 5.0),
            visibility_ocr_s=_env_int("VISIBILITY_OCR_S", 300),
            visibility_segment_s=_env_int("VISIBILITY_SEGMENT_S", 300),
            visibility_validate_s=_env_int("VISIBILITY_VALIDATE_S", 120),
            visibility_notify_s=_env_int("VISIBILITY_NOTIFY_S", 60),
            connection_ttl_s=_env_int("CONNECTION_TTL_S", 3600),
            notify_lookup_attempts=_env_int("NOTIFY_LOOKUP_ATTEMPTS", 5),
            notify_lookup_backoff_s=_env_float("NOTIFY_LOOKUP_BACKOFF_S", 0.5),
            scoring=load_scoring_config(_env_opt("SCORING_CONFIG")),
        )

    @property
    def provider_request_timeout_s(self) -> float:
        """HTTP timeout for one provider attempt, so every retry still lands inside PROVIDER_TIMEOUT_S."""
        return attempt_timeout_s(self.provider_timeout_s * 0.9, self.provider_retries)

    def validate(self, command: str) -> None:
        required = {
            "dispatch": ("textract_queue_url",),
            "ocr": ("textract_queue_url", "bedrock_queue_url"),
            "segment": ("bedrock_queue_url", "validation_queue_url"),
            "validate": ("validation_queue_url", "sns_topic_arn"),
            "notify": ("notify_queue_url", "dynamodb_table", "websocket_endpoint"),
        }
        names = {
            "textract_queue_url": "TEXTRACT_QUEUE_URL",
            "bedrock_queue_url": "BEDROCK_QUEUE_URL",
            "validation_queue_url": "VALIDATION_QUEUE_URL",
            "notify_queue_url": "NOTIFY_QUEUE_URL",
            "sns_topic_arn": "SNS_TOPIC_ARN",
            "dynamodb_table": "DYNAMODB_TABLE_NAME",
            "websocket_endpoint": "WEBSOCKET_API_ENDPOINT",
        }
        for attr in required.get(command, ()):
            if not getattr(self, attr):
                raise SystemExit(f"Missing {names[attr]} (set in .env or environment).")

        if self.websocket_endpoint and not self.websocket_endpoint.startswith("https://"):
            raise SystemExit("WEBSOCKET_API_ENDPOINT should be a full https:// URL.")
        if self.max_attempts < 1:
            raise SystemExit("STAGE_MAX_ATTEMPTS must be >= 1.")
        if self.provider_timeout_s <= 0:
            raise SystemExit("PROVIDER_TIMEOUT_S must be > 0.")
        if self.provider_request_timeout_s < 0.5:
            raise SystemExit("PROVIDER_TIMEOUT_S is too short to fit PROVIDER_RETRIES retries.")
        if not (self.enable_google_books or self.enable_openlibrary):
            raise SystemExit("At least one bibliographic provider must be enabled.")


def load_scoring_config(path: Optional[str]) -> ScoringConfig:
    """
    Scoring weights and bands are heuristics; they can be tuned from a YAML
    mapping whose keys are ScoringConfig field names, e.g.

        title_weight: 0.7
        author_weight: 0.3
        accept_threshold: 0.5
    """
    cfg = ScoringConfig()
    if not path:
        return cfg
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except FileNotFoundError as e:
        raise SystemExit(f"Scoring config not found: {path}") from e
    except yaml.YAMLError as e:
        raise SystemExit(f"Failed to read scoring config: {path} ({e})") from e
    if not isinstance(data, dict):
        raise SystemExit(f"Scoring config must be a mapping: {path}")

    known = {f.name for f in fields(ScoringConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise SystemExit(f"Unknown scoring config keys in {path}: {', '.join(unknown)}")
    try:
        cfg = replace(cfg, **{k: float(v) for k, v in data.items()})
        cfg.validate()
    except (TypeError, ValueError) as e:
        raise SystemExit(f"Invalid scoring config {path}: {e}") from e
    return cfg
