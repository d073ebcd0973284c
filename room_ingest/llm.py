from __future__ import annotations

import json
from typing import Any, Protocol

from openai import OpenAI
from pydantic import ValidationError as PydanticValidationError

from .config_schema import ExtractionConfig, OpenAIConfig, ValidationMode
from .errors import LLMError, RateLimitError, TransportError
from .listing import ListingDraft, PostedBy, Utilities
from .llm_schema import LISTING_JSON_TEMPLATE, ExtractedListing
from .openai_retry import is_retryable_rate_limit, translate_openai_exception
from .outcome import UNKNOWN_POST_ID, Accepted, ExtractionOutcome, Rejected
from .post import RawPost
from .retry import RetryConfig, RetryEvent, SleepFn, call_with_retries
from .run_log import RunLogger


class _ChatCompletionsAPI(Protocol):
    def create(self, **kwargs: Any) -> Any: ...


class _ChatAPI(Protocol):
    completions: _ChatCompletionsAPI


class _OpenAIClient(Protocol):
    chat: _ChatAPI


class CompletionClient(Protocol):
    """
    Text completion capability.

    Returns the raw reply text; raises RateLimitError when throttled and
    TransportError for any other failure.
    """

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        json_mode: bool,
    ) -> str: ...


SYSTEM_PROMPT = (
    "You are a helpful assistant that extracts structured data from Vietnamese "
    "room-for-rent posts. Reply with a single JSON object and nothing else."
)

_PROMPT_TEMPLATE = """\
Extract the rental listing described by this Facebook group post.

Post:
- Text: {text}
- Group: {group}
- Posted by: {author}
- Link: {link}

Return a JSON object with exactly these keys:
{template}

Notes:
- Use null or [] when a value is not stated in the post.
- price and depositRequired are integers in VND. Expand shorthand: "3tr" is 3000000, "2tr5" is 2500000, "800k" is 800000.
- area is the floor area in m2.
- roomType: single (private room), shared (shared room), apartment (whole apartment), studio.
"""


def build_extraction_prompt(post: RawPost) -> str:
    return _PROMPT_TEMPLATE.format(
        text=post.text or "",
        group=post.group_title or "Unknown Group",
        author=post.author.name or "Anonymous",
        link=post.url or "",
        template=json.dumps(LISTING_JSON_TEMPLATE, ensure_ascii=False, indent=2),
    )


def _extract_message_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        raise TransportError("Completion response did not include any choices")

    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    if not isinstance(content, str) or not content.strip():
        raise TransportError("Completion response did not include message content")

    return content.strip()


class OpenAICompletionClient:
    """
    Chat-completions wrapper for any OpenAI-compatible endpoint (OpenAI, OpenRouter).

    SDK-level retries are disabled; callers apply their own backoff policy.
    """

    def __init__(
        self,
        api_key: str,
        *,
        openai_cfg: OpenAIConfig,
        client: _OpenAIClient | None = None,
    ) -> None:
        key = (api_key or "").strip()
        if not key and client is None:
            raise ValueError("api_key must be a non-empty string")

        self._cfg = openai_cfg
        self._client: _OpenAIClient = client or OpenAI(
            api_key=key,
            base_url=openai_cfg.base_url,
            max_retries=0,
            timeout=openai_cfg.timeout_seconds,
        )

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        json_mode: bool,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": self._cfg.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": self._cfg.max_output_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self._client.chat.completions.create(**kwargs)
        except Exception as e:
            raise translate_openai_exception(e, model=self._cfg.model) from e

        return _extract_message_text(response)


def _parse_payload(raw: str) -> ExtractedListing:
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise TransportError(f"Completion reply is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise TransportError("Completion reply must be a JSON object")

    try:
        return ExtractedListing.model_validate(data)
    except PydanticValidationError as e:
        raise TransportError(f"Completion reply does not match the listing shape: {e}") from e


def merge_with_post(post_id: str, post: RawPost, extracted: ExtractedListing) -> ListingDraft:
    posted_by = None
    if post.author.id or post.author.name:
        posted_by = PostedBy(
            name=post.author.name or "Anonymous",
            fb_id=post.author.id or "unknown",
        )

    return ListingDraft(
        post_id=post_id,
        title=extracted.title,
        description=extracted.description,
        address=extracted.address,
        district=extracted.district,
        ward=extracted.ward,
        price=extracted.price,
        area=extracted.area,
        amenities=tuple(extracted.amenities),
        rules=tuple(extracted.rules),
        contact_phone=extracted.contact_phone,
        deposit_required=extracted.deposit_required,
        utilities=Utilities(
            electricity=extracted.utilities.electricity,
            water=extracted.utilities.water,
            internet=extracted.utilities.internet,
            parking=extracted.utilities.parking,
        ),
        room_type=extracted.room_type,
        images=tuple(post.image_uris),
        posted_by=posted_by,
        posted_at=post.time,
        permalink=post.url,
        group_name=post.group_title,
    )


def validation_failure(draft: ListingDraft, mode: ValidationMode) -> str | None:
    """
    Return why a draft may not be persisted, or None when it passes.

    lenient: title or price is enough. strict: both are required.
    """
    if mode == "strict":
        if not draft.has_title or not draft.has_price:
            return "missing required fields: title or price"
        return None

    if not draft.has_title and not draft.has_price:
        return "missing both title and price"
    return None


class ListingExtractor:
    """
    One completion call per post, turned into an Accepted or Rejected outcome.

    Rate-limited calls are retried with exponential backoff; every other failure
    is reported as Rejected without a retry.
    """

    def __init__(
        self,
        completion: CompletionClient,
        *,
        extraction_cfg: ExtractionConfig,
        temperature: float = 0.3,
        sleep_fn: SleepFn | None = None,
        logger: RunLogger | None = None,
    ) -> None:
        self._completion = completion
        self._cfg = extraction_cfg
        self._temperature = float(temperature)
        self._retry = RetryConfig(
            max_retries=extraction_cfg.max_retries,
            base_delay_seconds=extraction_cfg.retry_base_delay_seconds,
            max_delay_seconds=extraction_cfg.retry_max_delay_seconds,
        )
        self._sleep_fn = sleep_fn
        self._logger = logger

    @property
    def validation_mode(self) -> ValidationMode:
        return self._cfg.validation_mode

    def _on_retry(self, event: RetryEvent) -> None:
        if self._logger is None:
            return
        self._logger.warning(
            "extraction_retry",
            post_id=event.post_id,
            retry=event.retry_number,
            max_retries=event.max_retries,
            delay_seconds=event.delay_seconds,
            reason=event.reason,
        )

    def _complete(self, post_id: str, prompt: str) -> str:
        return call_with_retries(
            lambda: self._completion.complete(
                SYSTEM_PROMPT,
                prompt,
                temperature=self._temperature,
                json_mode=True,
            ),
            cfg=self._retry,
            is_retryable=is_retryable_rate_limit,
            operation="completion.extract_listing",
            on_retry=self._on_retry,
            sleep_fn=self._sleep_fn,
            post_id=post_id,
        )

    def extract(self, post: RawPost, *, mode: ValidationMode | None = None) -> ExtractionOutcome:
        post_id = post.legacy_id
        if not post_id:
            return Rejected(post_id=UNKNOWN_POST_ID, reason="missing identifier")

        if not (post.text or "").strip():
            return Rejected(post_id=post_id, reason="empty text")

        try:
            raw = self._complete(post_id, build_extraction_prompt(post))
            extracted = _parse_payload(raw)
        except RateLimitError:
            return Rejected(post_id=post_id, reason="rate limit exceeded")
        except LLMError as e:
            return Rejected(post_id=post_id, reason=str(e) or type(e).__name__)

        draft = merge_with_post(post_id, post, extracted)

        failure = validation_failure(draft, mode or self._cfg.validation_mode)
        if failure is not None:
            return Rejected(post_id=post_id, reason=failure)

        return Accepted(post_id=post_id, draft=draft)
