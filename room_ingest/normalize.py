from __future__ import annotations

from typing import Any, Mapping

from .post import Attachment, Author, RawPost


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _coerce_text(value: Any) -> str | None:
    # Post bodies keep their inner whitespace; fingerprinting normalizes later.
    if isinstance(value, str) and value.strip():
        return value
    return None


def _attachment_from_item(item: Any) -> Attachment | None:
    if not isinstance(item, Mapping):
        return None

    image_uri = None
    image = item.get("image")
    if isinstance(image, Mapping):
        image_uri = _coerce_str(image.get("uri"))

    return Attachment(
        image_uri=image_uri,
        url=_coerce_str(item.get("url")),
        ocr_text=_coerce_str(item.get("ocrText")),
    )


def _attachments_from_item(value: Any) -> tuple[Attachment, ...]:
    if not isinstance(value, list):
        return ()

    out: list[Attachment] = []
    for raw in value:
        att = _attachment_from_item(raw)
        if att is not None:
            out.append(att)
    return tuple(out)


def _author_from_item(item: Mapping[str, Any]) -> Author:
    user = item.get("user")
    if isinstance(user, Mapping):
        return Author(id=_coerce_id(user.get("id")), name=_coerce_str(user.get("name")))
    return Author()


def raw_post_from_apify_item(item: Mapping[str, Any]) -> RawPost | None:
    """
    Best-effort extraction of a RawPost from a Facebook group scraper dataset item.

    Returns None only when the item is not a mapping; posts lacking an identifier or
    text are still returned so prechecks can count and report them.
    """
    if not isinstance(item, Mapping):
        return None

    legacy_id = _coerce_id(item.get("legacyId")) or _coerce_id(item.get("legacy_id"))

    text = _coerce_text(item.get("text")) or _coerce_text(item.get("message"))

    url = _coerce_str(item.get("url")) or _coerce_str(item.get("facebookUrl"))

    group_id = _coerce_id(item.get("facebookId")) or _coerce_id(item.get("groupId"))

    return RawPost(
        legacy_id=legacy_id,
        text=text,
        attachments=_attachments_from_item(item.get("attachments")),
        author=_author_from_item(item),
        group_id=group_id,
        group_title=_coerce_str(item.get("groupTitle")),
        time=_coerce_str(item.get("time")),
        url=url,
        raw=dict(item),
    )
