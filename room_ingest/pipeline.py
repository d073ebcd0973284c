from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .apify_client import ApifyDatasetReader, DatasetReader
from .batch import BatchOrchestrator, ClockFn, Extractor
from .config import RuntimeSecrets, config_sha256
from .config_schema import AppConfig
from .dedupe import DedupeOptions, DuplicateClassifier, filter_duplicates
from .errors import ConfigError, DatasetError, InputError, StorageError
from .llm import ListingExtractor, OpenAICompletionClient
from .normalize import raw_post_from_apify_item
from .post import RawPost
from .prechecks import split_valid_posts
from .reconcile import ListingReconciler
from .report import IngestReport, failure_report, format_report
from .retry import SleepFn
from .run_log import RunLogger
from .storage import ListingStore


class WebhookResource(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    default_dataset_id: str | None = Field(None, alias="defaultDatasetId")


class WebhookPayload(BaseModel):
    """Body of an Apify "run succeeded" webhook, plus optional duplicate-handling flags."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    resource: WebhookResource | None = None
    skip_exact_duplicates: bool | None = Field(None, alias="skipExactDuplicates")
    skip_similar_duplicates: bool | None = Field(None, alias="skipSimilarDuplicates")

    @property
    def dataset_id(self) -> str | None:
        if self.resource is None:
            return None
        ds = (self.resource.default_dataset_id or "").strip()
        return ds or None

    def dedupe_options(self, config: AppConfig) -> DedupeOptions:
        return DedupeOptions(
            skip_exact=(
                config.dedupe.skip_exact
                if self.skip_exact_duplicates is None
                else self.skip_exact_duplicates
            ),
            skip_similar=(
                config.dedupe.skip_similar
                if self.skip_similar_duplicates is None
                else self.skip_similar_duplicates
            ),
        )


def parse_webhook_payload(body: Any) -> WebhookPayload:
    if not isinstance(body, Mapping):
        raise InputError("Webhook body must be a JSON object")

    try:
        payload = WebhookPayload.model_validate(dict(body))
    except PydanticValidationError as e:
        raise InputError(f"Invalid webhook body: {e}") from e

    if payload.dataset_id is None:
        raise InputError("Missing resource.defaultDatasetId in webhook body")

    return payload


def default_extractor(
    config: AppConfig,
    secrets: RuntimeSecrets,
    *,
    sleep_fn: SleepFn | None = None,
    logger: RunLogger | None = None,
) -> ListingExtractor:
    completion = OpenAICompletionClient(secrets.openai_api_key, openai_cfg=config.openai)
    return ListingExtractor(
        completion,
        extraction_cfg=config.extraction,
        temperature=config.openai.temperature,
        sleep_fn=sleep_fn,
        logger=logger,
    )


def _first_by_id(posts: Sequence[RawPost]) -> dict[str, RawPost]:
    out: dict[str, RawPost] = {}
    for post in posts:
        if post.legacy_id and post.legacy_id not in out:
            out[post.legacy_id] = post
    return out


def run_ingestion(
    config: AppConfig,
    items: Sequence[Any],
    *,
    store: ListingStore,
    extractor: Extractor,
    options: DedupeOptions | None = None,
    logger: RunLogger | None = None,
    sleep_fn: SleepFn | None = None,
    clock: ClockFn | None = None,
    now_fn: Callable[[], datetime] | None = None,
) -> IngestReport:
    """
    Run one batch of dataset items through precheck, dedupe, extraction and persistence.

    Per-post failures end up in the report; only store-level failures raise.
    """
    opts = options or DedupeOptions(
        skip_exact=config.dedupe.skip_exact,
        skip_similar=config.dedupe.skip_similar,
    )

    posts = [raw_post_from_apify_item(item) or RawPost(legacy_id=None) for item in items]
    if logger is not None:
        logger.info("posts_received", total=len(posts))

    if not posts:
        return IngestReport(message="No posts to process")

    split = split_valid_posts(posts)
    if logger is not None:
        logger.info("posts_filtered", valid=len(split.valid), invalid=len(split.invalid))

    if not split.valid:
        return IngestReport(
            message="No valid posts to process",
            total_posts=len(posts),
            invalid=split.invalid,
        )

    classifier = DuplicateClassifier(
        store,
        similarity_window_days=config.dedupe.similarity_window_days,
        now_fn=now_fn,
    )
    deduped = filter_duplicates(
        split.valid,
        classifier,
        options=opts,
        max_workers=config.dedupe.max_workers,
    )
    if logger is not None:
        logger.info(
            "duplicates_classified",
            unique=len(deduped.unique_posts),
            duplicates=len(deduped.duplicates),
            skip_exact=opts.skip_exact,
            skip_similar=opts.skip_similar,
        )

    if not deduped.unique_posts:
        return IngestReport(
            message="All posts are duplicates, nothing to process",
            total_posts=len(posts),
            invalid=split.invalid,
            valid_posts=len(split.valid),
            duplicates=deduped.duplicates,
        )

    orchestrator = BatchOrchestrator(
        extractor,
        batch_cfg=config.batch,
        sleep_fn=sleep_fn,
        clock=clock,
        logger=logger,
    )
    outcomes = orchestrator.run(deduped.unique_posts)

    unique_ids = {p.legacy_id for p in deduped.unique_posts if p.legacy_id}
    refresh_ids = {
        pid
        for pid, check in deduped.checks.items()
        if pid in unique_ids and check.is_stored_redelivery
    }

    reconciler = ListingReconciler(
        store,
        defaults=config.listing,
        validation_mode=config.extraction.validation_mode,
        fingerprint_fn=classifier.fingerprints,
        logger=logger,
    )
    saves = reconciler.persist(
        outcomes,
        _first_by_id(deduped.unique_posts),
        refresh_ids=refresh_ids,
    )

    return IngestReport(
        message="Batch processing complete",
        total_posts=len(posts),
        invalid=split.invalid,
        valid_posts=len(split.valid),
        duplicates=deduped.duplicates,
        unique_posts=len(deduped.unique_posts),
        outcomes=outcomes,
        saves=saves,
    )


def handle_webhook(
    config: AppConfig,
    body: Any,
    *,
    store: ListingStore,
    dataset_reader: DatasetReader | None = None,
    extractor: Extractor | None = None,
    secrets: RuntimeSecrets | None = None,
    logger: RunLogger | None = None,
    sleep_fn: SleepFn | None = None,
    clock: ClockFn | None = None,
    now_fn: Callable[[], datetime] | None = None,
) -> dict[str, Any]:
    """
    Resolve the webhook's dataset reference and ingest it.

    Always returns a JSON-ready report. It carries success=false only when the payload
    is unusable, the dataset cannot be read, or the store fails.
    """
    if logger is not None and not logger.run_id:
        logger.set_run_id(uuid.uuid4().hex)

    if logger is not None:
        logger.info("ingest_started", config_hash=config_sha256(config))

    try:
        payload = parse_webhook_payload(body)
        dataset_id = payload.dataset_id or ""
        if logger is not None:
            logger = logger.bind(dataset_id=dataset_id)

        if dataset_reader is None or extractor is None:
            if secrets is None:
                raise ConfigError("Runtime secrets are required to build default collaborators")

        reader = dataset_reader or ApifyDatasetReader(secrets.apify_token, apify_cfg=config.apify)
        items = reader.fetch_items(dataset_id)

        listing_extractor = extractor or default_extractor(
            config, secrets, sleep_fn=sleep_fn, logger=logger
        )

        report = run_ingestion(
            config,
            items,
            store=store,
            extractor=listing_extractor,
            options=payload.dedupe_options(config),
            logger=logger,
            sleep_fn=sleep_fn,
            clock=clock,
            now_fn=now_fn,
        ).to_dict()
    except (InputError, DatasetError, StorageError) as e:
        if logger is not None:
            logger.exception("ingest_failed", exc=e)
        return failure_report(str(e))

    if logger is not None:
        logger.info("ingest_completed", summary=format_report(report), stats=report["stats"])
    return report
