from __future__ import annotations

from typing import Any, Protocol

from apify_client import ApifyClient
from apify_client.errors import ApifyApiError

from .apify_retry import is_retryable_apify_exception
from .config_schema import ApifyConfig
from .errors import DatasetError
from .retry import OnRetryFn, RetryConfig, SleepFn, call_with_retries


_DEFAULT_APIFY_RETRY = RetryConfig(
    max_retries=8,
    base_delay_seconds=0.5,
    max_delay_seconds=20.0,
    retry_after_cap_seconds=0.0,
)


class DatasetReader(Protocol):
    def fetch_items(self, dataset_id: str) -> list[dict[str, Any]]: ...


class ApifyDatasetReader:
    """
    Reads the items of an Apify dataset (the Facebook groups scraper output).

    The whole dataset is fetched in one retried call so a transient failure never
    leaves a half-read batch.
    """

    def __init__(
        self,
        token: str,
        *,
        apify_cfg: ApifyConfig | None = None,
        client: ApifyClient | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        self._cfg = apify_cfg or ApifyConfig()
        self._retry = retry or _DEFAULT_APIFY_RETRY
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn

        if client is not None:
            self._client = client
        else:
            # Disable client-level retries so our own policy applies uniformly.
            self._client = ApifyClient(token=token or None, max_retries=0)

    def fetch_items(self, dataset_id: str) -> list[dict[str, Any]]:
        ds = (dataset_id or "").strip()
        if not ds:
            raise DatasetError("dataset_id must be a non-empty string")

        def _do_fetch() -> list[dict[str, Any]]:
            return list(
                self._client.dataset(ds).iterate_items(
                    limit=self._cfg.dataset_limit,
                    clean=self._cfg.dataset_clean,
                )
            )

        try:
            items = call_with_retries(
                _do_fetch,
                cfg=self._retry,
                is_retryable=is_retryable_apify_exception,
                operation=f"apify.dataset.iterate_items:{ds}",
                on_retry=self._on_retry,
                sleep_fn=self._sleep_fn,
            )
        except ApifyApiError as e:
            raise DatasetError(f"Failed to read dataset items ({ds}): {e}") from e
        except Exception as e:
            raise DatasetError(f"Unexpected error while reading dataset ({ds}): {e}") from e

        if not isinstance(items, list):
            raise DatasetError(f"Invalid dataset format ({ds}): expected a list of items")

        return items
