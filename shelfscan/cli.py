from __future__ import annotations

import argparse
import json
import logging
import os
import threading
from typing import Callable, Dict, List, Optional

from rich.logging import RichHandler

from shelfscan.config import AppConfig, load_dotenv
from shelfscan.core.models import FinalResults, new_job_id
from shelfscan.core.retry import RetryPolicy
from shelfscan.delivery.registry import DynamoConnectionRegistry
from shelfscan.delivery.notifier import Notifier
from shelfscan.delivery.sessions import ApiGatewaySessionChannel
from shelfscan.integrations.aws import make_client
from shelfscan.integrations.http_client import ProviderLimiter
from shelfscan.integrations.llm import BedrockTextModel, TextModel
from shelfscan.integrations.ocr import TextractOcr
from shelfscan.integrations.providers import BookProvider, GoogleBooksProvider, OpenLibraryProvider
from shelfscan.io.evaluate import build_report_data, calculate_accuracy, load_ground_truth, render_markdown
from shelfscan.io.utils import read_json, write_json, write_text
from shelfscan.pipeline.consumer import StageConsumer
from shelfscan.pipeline.dispatcher import JobDispatcher
from shelfscan.pipeline.events import QueueEventBus, SnsEventBus
from shelfscan.pipeline.ocr_stage import OcrWorker
from shelfscan.pipeline.queue import InMemoryQueue, SqsQueue, StageQueue
from shelfscan.pipeline.results import FINAL_RESULTS, LocalResultStore, ResultStore, S3ResultStore
from shelfscan.pipeline.segmentation import Segmenter, SegmentationWorker
from shelfscan.pipeline.validation import ValidationEngine, ValidationWorker

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _setup_logging(level_name: str) -> None:
    logging.basicConfig(
        level=LOG_LEVELS.get(level_name.lower(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


# -----------------------
# Wiring
# -----------------------
def build_providers(cfg: AppConfig) -> List[BookProvider]:
    common = dict(timeout_s=cfg.provider_request_timeout_s, retries=cfg.provider_retries, max_results=cfg.provider_max_results)
    providers: List[BookProvider] = []
    if cfg.enable_google_books:
        providers.append(GoogleBooksProvider(api_key=cfg.google_books_api_key, **common))
    if cfg.enable_openlibrary:
        providers.append(OpenLibraryProvider(**common))
    return providers


def build_engine(cfg: AppConfig) -> ValidationEngine:
    providers = build_providers(cfg)
    limiters = {
        p.name: ProviderLimiter(cfg.provider_rate_per_sec, cfg.provider_burst, cfg.provider_max_concurrent)
        for p in providers
    }
    return ValidationEngine(
        providers,
        limiters=limiters,
        scoring=cfg.scoring,
        provider_timeout_s=cfg.provider_timeout_s,
        candidate_concurrency=cfg.candidate_concurrency,
    )


def build_model(cfg: AppConfig) -> TextModel:
    return BedrockTextModel(
        make_client("bedrock-runtime", cfg.aws_region),
        cfg.bedrock_model_id,
        max_tokens=cfg.bedrock_max_tokens,
    )


def build_store(cfg: AppConfig) -> ResultStore:
    if cfg.results_bucket:
        return S3ResultStore(make_client("s3", cfg.aws_region), cfg.results_bucket)
    return LocalResultStore(cfg.results_dir)


def _sqs(cfg: AppConfig, url: str, visibility_s: int) -> SqsQueue:
    return SqsQueue(make_client("sqs", cfg.aws_region), url, visibility_timeout_s=visibility_s)


def _policy(cfg: AppConfig) -> RetryPolicy:
    dlq = _sqs(cfg, cfg.dead_letter_queue_url, 60) if cfg.dead_letter_queue_url else None
    return RetryPolicy(max_attempts=cfg.max_attempts, backoff_s=cfg.retry_backoff_s, dead_letter=dlq)


def _notifier(cfg: AppConfig) -> Optional[Notifier]:
    if not (cfg.dynamodb_table and cfg.websocket_endpoint):
        return None
    registry = DynamoConnectionRegistry(make_client("dynamodb", cfg.aws_region), cfg.dynamodb_table, ttl_s=cfg.connection_ttl_s)
    channel = ApiGatewaySessionChannel(
        make_client("apigatewaymanagementapi", cfg.aws_region, endpoint_url=cfg.websocket_endpoint)
    )
    return Notifier(
        registry,
        channel,
        lookup_attempts=cfg.notify_lookup_attempts,
        lookup_backoff_s=cfg.notify_lookup_backoff_s,
    )


def build_worker(cfg: AppConfig, stage: str) -> StageConsumer:
    notifier = _notifier(cfg)
    progress = notifier.push_progress if notifier else None
    handler: Callable[[Dict], None]

    if stage == "ocr":
        queue = _sqs(cfg, cfg.textract_queue_url, cfg.visibility_ocr_s)
        worker = OcrWorker(
            TextractOcr(make_client("textract", cfg.aws_region)),
            build_store(cfg),
            _sqs(cfg, cfg.bedrock_queue_url, cfg.visibility_segment_s),
            min_line_confidence=cfg.min_line_confidence,
            progress=progress,
        )
        handler = worker.handle
    elif stage == "segment":
        queue = _sqs(cfg, cfg.bedrock_queue_url, cfg.visibility_segment_s)
        worker = SegmentationWorker(
            Segmenter(build_model(cfg), malformed_retries=cfg.malformed_retries),
            build_store(cfg),
            _sqs(cfg, cfg.validation_queue_url, cfg.visibility_validate_s),
            progress=progress,
        )
        handler = worker.handle
    elif stage == "validate":
        queue = _sqs(cfg, cfg.validation_queue_url, cfg.visibility_validate_s)
        worker = ValidationWorker(
            build_engine(cfg),
            build_store(cfg),
            SnsEventBus(make_client("sns", cfg.aws_region), cfg.sns_topic_arn),
            progress=progress,
        )
        handler = worker.handle
    elif stage == "notify":
        if notifier is None:
            raise SystemExit("notify worker needs DYNAMODB_TABLE_NAME and WEBSOCKET_API_ENDPOINT.")
        queue = _sqs(cfg, cfg.notify_queue_url, cfg.visibility_notify_s)
        handler = notifier.handle
    else:
        raise SystemExit(f"Unknown worker stage: {stage}")

    return StageConsumer(stage, queue, handler, _policy(cfg))


class _FixedReplyModel(TextModel):
    """Feeds a saved model reply back through the parser (offline resolve)."""

    def __init__(self, reply: str) -> None:
        self.reply = reply

    def complete(self, prompt: str) -> str:
        return self.reply


def resolve_local(cfg: AppConfig, text: str, *, model: TextModel, job_id: Optional[str] = None) -> FinalResults:
    """
    Run segmentation and validation in-process over in-memory queues.

    Outputs persist under RESULTS_DIR, so each run gets a fresh job id unless one
    is given; passing an earlier id reuses that run's stored outputs.
    """
    job_id = job_id or new_job_id()
    store = LocalResultStore(cfg.results_dir)
    seg_q: StageQueue = InMemoryQueue("segment")
    val_q: StageQueue = InMemoryQueue("validate")
    done_q: StageQueue = InMemoryQueue("complete")

    seg = SegmentationWorker(Segmenter(model, malformed_retries=cfg.malformed_retries), store, val_q)
    with build_engine(cfg) as engine:
        val = ValidationWorker(engine, store, QueueEventBus(done_q))
        seg_q.send({"jobId": job_id, "extractedText": text, "textractComplete": True}, group_id=job_id)
        policy = RetryPolicy(max_attempts=1)
        StageConsumer("segment", seg_q, seg.handle, policy).drain()
        StageConsumer("validate", val_q, val.handle, policy).drain()

    data = store.get_json(job_id, FINAL_RESULTS)
    if not data:
        raise SystemExit(f"No results produced for job {job_id} (see log above).")
    return FinalResults.from_dict(data)


# -----------------------
# Commands
# -----------------------
def cmd_dispatch(cfg: AppConfig, args: argparse.Namespace) -> None:
    cfg.validate("dispatch")
    msg = JobDispatcher(_sqs(cfg, cfg.textract_queue_url, cfg.visibility_ocr_s)).dispatch(args.bucket, args.key)
    print(msg.job_id)


def cmd_worker(cfg: AppConfig, args: argparse.Namespace) -> None:
    cfg.validate(args.stage)
    consumer = build_worker(cfg, args.stage)
    consumer.batch_size = args.batch_size
    consumer.stop_file = args.stop_file
    consumer.max_seconds = args.max_seconds
    if args.stop_file:
        logger.info("Stop file: %s (create it to stop gracefully)", args.stop_file)
    stop = threading.Event()
    try:
        consumer.run(stop)
    except KeyboardInterrupt:
        stop.set()
        logger.info("interrupted | stage=%s", args.stage)


def cmd_resolve(cfg: AppConfig, args: argparse.Namespace) -> None:
    if not os.path.exists(args.text_file):
        raise SystemExit(f"Input not found: {args.text_file}")
    with open(args.text_file, "r", encoding="utf-8") as f:
        text = f.read()

    if args.reply:
        with open(args.reply, "r", encoding="utf-8") as f:
            model: TextModel = _FixedReplyModel(f.read())
        logger.info("using saved model reply: %s", args.reply)
    else:
        model = build_model(cfg)

    results = resolve_local(cfg, text, model=model, job_id=args.job_id)
    if args.out:
        write_json(results.to_dict(), args.out)
        logger.info("Done: %s/%s validated -> %s", results.validated_count, results.total_candidates, args.out)
    else:
        print(json.dumps(results.to_dict(), ensure_ascii=False, indent=2))


def cmd_evaluate(cfg: AppConfig, args: argparse.Namespace) -> None:
    results = FinalResults.from_dict(read_json(args.results))
    truth = load_ground_truth(read_json(args.ground_truth))
    accuracy = calculate_accuracy(results.books, truth)
    logger.info("accuracy | job=%s | truth=%s | accuracy=%.1f%%", results.job_id, len(truth), accuracy * 100)
    print(f"{accuracy:.4f}")
    if args.report:
        write_text(render_markdown(build_report_data(results, truth)) + "\n", args.report)
        logger.info("Report written: %s", args.report)


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(
        prog="shelfscan",
        description="Bookshelf photo -> OCR -> candidate segmentation -> catalog validation -> client notification",
    )
    ap.add_argument("--log-level", default="info", help="Log level: debug, info, warning, error")
    ap.add_argument("--env", default=".env", help="Path to .env file")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("dispatch", help="Start a job for an uploaded image")
    p.add_argument("bucket")
    p.add_argument("key")
    p.set_defaults(func=cmd_dispatch)

    p = sub.add_parser("worker", help="Run one stage consumer until stopped")
    p.add_argument("stage", choices=["ocr", "segment", "validate", "notify"])
    p.add_argument("--batch-size", type=int, default=1, help="Messages per receive (SQS max 10)")
    p.add_argument("--stop-file", default=".STOP", help="If this file exists, stop gracefully")
    p.add_argument("--max-seconds", type=int, default=0, help="Max runtime seconds (0 = no limit)")
    p.set_defaults(func=cmd_worker)

    p = sub.add_parser("resolve", help="Segment and validate a text file in-process")
    p.add_argument("text_file", help="Raw OCR text, one fragment per line")
    p.add_argument("--reply", default=None, help="Saved model reply to use instead of calling the model")
    p.add_argument("--job-id", default=None, help="Job id for stored outputs (default: fresh id per run; reuse one to resume)")
    p.add_argument("--out", default=None, help="Write final results JSON here instead of stdout")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("evaluate", help="Score final results against a ground-truth list")
    p.add_argument("results", help="final-results.json")
    p.add_argument("ground_truth", help="JSON list of {title, authors}")
    p.add_argument("--report", default=None, help="Optional markdown report output")
    p.set_defaults(func=cmd_evaluate)

    args = ap.parse_args(argv)
    _setup_logging(args.log_level)

    used = load_dotenv(args.env)
    if used:
        logger.info("loaded .env: %s", used)
    else:
        logger.debug(".env not found via search paths; relying on existing environment variables")

    cfg = AppConfig.from_env()
    args.func(cfg, args)
