"""Document model: the recipe record edited in a tab, plus its wire format."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Literal

from recipedit.errors import ValidationError
from recipedit.serde import (
    as_str_object_dict,
    object_list,
    optional_string,
    require_string,
    string_or_empty,
    string_tuple,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

IMAGE_PREFIX = "images/"
ATTACHMENT_PREFIX = "downloadExecutables/"

ReferenceKind = Literal["image", "attachment"]

_EXTENSION_RE = re.compile(r"\.[^/.]+$")


def image_key_from_url(url: str) -> str | None:
    """Return the blob key of a locally stored image URL, or ``None`` for external URLs.

    Example: ``"images/batch-retrieve-image-2.png"`` -> ``"batch-retrieve-image-2"``.
    """
    if not url or not url.startswith(IMAGE_PREFIX):
        return None
    name = url[len(IMAGE_PREFIX) :]
    key = _EXTENSION_RE.sub("", name)
    return key or None


def image_extension_from_url(url: str, default: str = "png") -> str:
    """Return the lower-cased file extension of an image URL."""
    match = _EXTENSION_RE.search(url or "")
    if match is None:
        return default
    return match.group(0)[1:].lower()


def image_url(key: str, extension: str) -> str:
    """Build the reserved-prefix URL for an image key."""
    return f"{IMAGE_PREFIX}{key}.{extension}"


def attachment_key_from_path(file_path: str | None) -> str | None:
    """Return the blob key of a locally stored attachment path, or ``None``."""
    if not file_path or not file_path.startswith(ATTACHMENT_PREFIX):
        return None
    return file_path[len(ATTACHMENT_PREFIX) :] or None


def attachment_path(key: str) -> str:
    """Build the reserved-prefix path for an attachment key."""
    return f"{ATTACHMENT_PREFIX}{key}"


@dataclass(frozen=True, slots=True)
class ConfigEntry:
    """One field/value pair configured in a walkthrough step."""

    field: str = ""
    value: str = ""


@dataclass(frozen=True, slots=True)
class MediaRef:
    """An image (or video/gif/link) shown in a step or at document level.

    ``preview_handle`` is runtime-only: it is excluded from equality and never
    serialized.
    """

    type: str = "image"
    url: str = ""
    alt: str = ""
    preview_handle: str | None = field(default=None, compare=False, repr=False)

    @property
    def key(self) -> str | None:
        """Blob key when the media is stored locally."""
        return image_key_from_url(self.url)


@dataclass(frozen=True, slots=True)
class Step:
    """One walkthrough step: a label, its config entries, and its media."""

    label: str = ""
    config: tuple[ConfigEntry, ...] = ()
    media: tuple[MediaRef, ...] = ()

    def __post_init__(self) -> None:
        """Normalize containers to tuples."""
        object.__setattr__(self, "config", tuple(self.config))
        object.__setattr__(self, "media", tuple(self.media))


@dataclass(frozen=True, slots=True)
class AttachmentRef:
    """A downloadable file offered by the document."""

    title: str | None = None
    url: str | None = None
    file_path: str | None = None

    @property
    def key(self) -> str | None:
        """Blob key when the file is stored locally."""
        return attachment_key_from_path(self.file_path)


@dataclass(frozen=True, slots=True)
class Link:
    """A titled hyperlink (related recipe, prerequisite quick link)."""

    title: str = ""
    url: str = ""


@dataclass(frozen=True, slots=True)
class Prerequisite:
    """A prerequisite description with optional quick links."""

    description: str = ""
    quick_links: tuple[Link, ...] = ()

    def __post_init__(self) -> None:
        """Normalize containers to tuples."""
        object.__setattr__(self, "quick_links", tuple(self.quick_links))


@dataclass(frozen=True, slots=True)
class Document:
    """A recipe document. Immutable: edits return a new instance."""

    id: str = ""
    title: str = ""
    category: str = ""
    versions: tuple[str, ...] = ()
    overview: str = ""
    when_to_use: str = ""
    direction: str = ""
    connection: str = ""
    general_images: tuple[MediaRef, ...] = ()
    prerequisites: tuple[Prerequisite, ...] = ()
    walkthrough: tuple[Step, ...] = ()
    attachments: tuple[AttachmentRef, ...] = ()
    related: tuple[Link, ...] = ()
    keywords: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Normalize containers to tuples."""
        for name in (
            "versions",
            "general_images",
            "prerequisites",
            "walkthrough",
            "attachments",
            "related",
            "keywords",
        ):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    def to_dict(self) -> dict[str, object]:
        """Serialize to the JSON wire format. Runtime-only fields are dropped."""
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "DSPVersions": list(self.versions),
            "overview": self.overview,
            "whenToUse": self.when_to_use,
            "generalImages": [_media_to_dict(media) for media in self.general_images],
            "prerequisites": [
                {
                    "description": item.description,
                    "quickLinks": [_link_to_dict(link) for link in item.quick_links],
                }
                for item in self.prerequisites
            ],
            "direction": self.direction,
            "connection": self.connection,
            "walkthrough": [
                {
                    "step": step.label,
                    "config": [{"field": entry.field, "value": entry.value} for entry in step.config],
                    "media": [_media_to_dict(media) for media in step.media],
                }
                for step in self.walkthrough
            ],
            "downloadableExecutables": [_attachment_to_dict(item) for item in self.attachments],
            "relatedRecipes": [_link_to_dict(link) for link in self.related],
            "keywords": list(self.keywords),
        }

    def to_json(self) -> str:
        """Serialize to indented JSON text."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

    @classmethod
    def from_dict(cls, value: object) -> Document:
        """Deserialize from the JSON wire format.

        Absent arrays become empty tuples; wrongly shaped values raise
        ``TypeError``.
        """
        data = as_str_object_dict(value, field_name="document")
        return cls(
            id=string_or_empty(data.get("id"), field_name="id"),
            title=string_or_empty(data.get("title"), field_name="title"),
            category=string_or_empty(data.get("category"), field_name="category"),
            versions=string_tuple(data.get("DSPVersions"), field_name="DSPVersions"),
            overview=string_or_empty(data.get("overview"), field_name="overview"),
            when_to_use=string_or_empty(data.get("whenToUse"), field_name="whenToUse"),
            direction=string_or_empty(data.get("direction"), field_name="direction"),
            connection=string_or_empty(data.get("connection"), field_name="connection"),
            general_images=tuple(
                _media_from_dict(item, field_name=f"generalImages[{index}]")
                for index, item in enumerate(object_list(data.get("generalImages"), field_name="generalImages"))
            ),
            prerequisites=tuple(
                _prerequisite_from_dict(item, field_name=f"prerequisites[{index}]")
                for index, item in enumerate(object_list(data.get("prerequisites"), field_name="prerequisites"))
            ),
            walkthrough=tuple(
                _step_from_dict(item, field_name=f"walkthrough[{index}]")
                for index, item in enumerate(object_list(data.get("walkthrough"), field_name="walkthrough"))
            ),
            attachments=tuple(
                _attachment_from_dict(item, field_name=f"downloadableExecutables[{index}]")
                for index, item in enumerate(
                    object_list(data.get("downloadableExecutables"), field_name="downloadableExecutables")
                )
            ),
            related=tuple(
                _link_from_dict(item, field_name=f"relatedRecipes[{index}]")
                for index, item in enumerate(object_list(data.get("relatedRecipes"), field_name="relatedRecipes"))
            ),
            keywords=string_tuple(data.get("keywords"), field_name="keywords"),
        )


def _media_to_dict(media: MediaRef) -> dict[str, object]:
    return {"type": media.type, "url": media.url, "alt": media.alt}


def _link_to_dict(link: Link) -> dict[str, object]:
    return {"title": link.title, "url": link.url}


def _attachment_to_dict(item: AttachmentRef) -> dict[str, object]:
    payload: dict[str, object] = {}
    if item.title is not None:
        payload["title"] = item.title
    if item.url is not None:
        payload["url"] = item.url
    if item.file_path is not None:
        payload["filePath"] = item.file_path
    return payload


def _media_from_dict(value: object, *, field_name: str) -> MediaRef:
    data = as_str_object_dict(value, field_name=field_name)
    return MediaRef(
        type=string_or_empty(data.get("type"), field_name=f"{field_name}.type") or "image",
        url=string_or_empty(data.get("url"), field_name=f"{field_name}.url"),
        alt=string_or_empty(data.get("alt"), field_name=f"{field_name}.alt"),
    )


def _link_from_dict(value: object, *, field_name: str) -> Link:
    data = as_str_object_dict(value, field_name=field_name)
    return Link(
        title=string_or_empty(data.get("title"), field_name=f"{field_name}.title"),
        url=string_or_empty(data.get("url"), field_name=f"{field_name}.url"),
    )


def _prerequisite_from_dict(value: object, *, field_name: str) -> Prerequisite:
    data = as_str_object_dict(value, field_name=field_name)
    links = object_list(data.get("quickLinks"), field_name=f"{field_name}.quickLinks")
    return Prerequisite(
        description=string_or_empty(data.get("description"), field_name=f"{field_name}.description"),
        quick_links=tuple(
            _link_from_dict(item, field_name=f"{field_name}.quickLinks[{index}]") for index, item in enumerate(links)
        ),
    )


def _step_from_dict(value: object, *, field_name: str) -> Step:
    data = as_str_object_dict(value, field_name=field_name)
    label = string_or_empty(data.get("step"), field_name=f"{field_name}.step")

    config: list[ConfigEntry] = []
    for index, item in enumerate(object_list(data.get("config"), field_name=f"{field_name}.config")):
        entry = as_str_object_dict(item, field_name=f"{field_name}.config[{index}]")
        config.append(
            ConfigEntry(
                field=string_or_empty(entry.get("field"), field_name=f"{field_name}.config[{index}].field"),
                value=string_or_empty(entry.get("value"), field_name=f"{field_name}.config[{index}].value"),
            )
        )
    media = tuple(
        _media_from_dict(item, field_name=f"{field_name}.media[{index}]")
        for index, item in enumerate(object_list(data.get("media"), field_name=f"{field_name}.media"))
    )
    return Step(label=label, config=tuple(config), media=media)


def _attachment_from_dict(value: object, *, field_name: str) -> AttachmentRef:
    data = as_str_object_dict(value, field_name=field_name)
    return AttachmentRef(
        title=optional_string(data.get("title"), field_name=f"{field_name}.title"),
        url=optional_string(data.get("url"), field_name=f"{field_name}.url"),
        file_path=optional_string(data.get("filePath"), field_name=f"{field_name}.filePath"),
    )


def new_document() -> Document:
    """Return the blank document a fresh tab starts with."""
    return Document(title="New Recipe", category="General")


_ARRAY_FIELDS = (
    "DSPVersions",
    "generalImages",
    "prerequisites",
    "walkthrough",
    "downloadableExecutables",
    "relatedRecipes",
    "keywords",
)


def validate_document_payload(value: object, *, source: str | None = None) -> Document:
    """Check the structure of a decoded document payload and build the Document.

    Raise ``ValidationError`` when the payload is not a mapping, lacks a title
    or category, has a non-array where an array is expected, or has a
    malformed walkthrough step.
    """
    if not isinstance(value, dict):
        msg = "Document must be a JSON object."
        raise ValidationError(msg, source=source)
    for name in ("title", "category"):
        item = value.get(name)
        if not isinstance(item, str) or not item.strip():
            msg = f"Document is missing required field '{name}'."
            raise ValidationError(msg, source=source)
    for name in _ARRAY_FIELDS:
        if name in value and value[name] is not None and not isinstance(value[name], list):
            msg = f"Field '{name}' must be an array."
            raise ValidationError(msg, source=source)
    for index, step in enumerate(value.get("walkthrough") or []):
        try:
            require_string(step.get("step") if isinstance(step, dict) else None, field_name="step")
        except TypeError:
            msg = f"Walkthrough step {index} has no label."
            raise ValidationError(msg, source=source) from None
        if not isinstance(step.get("config"), list) or not isinstance(step.get("media"), list):
            msg = f"Walkthrough step {index} must have 'config' and 'media' arrays."
            raise ValidationError(msg, source=source)
    try:
        return Document.from_dict(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(str(exc), source=source) from exc


# =============================================================================
# Reference helpers
# =============================================================================


@dataclass(frozen=True, slots=True)
class LocalReference:
    """A reference inside a document that points at a Blob Store entry."""

    kind: ReferenceKind
    key: str
    url: str
    location: str
    step_index: int | None = None


def iter_local_references(document: Document) -> Iterator[LocalReference]:
    """Yield every reserved-prefix reference of a document in document order."""
    for index, media in enumerate(document.general_images):
        key = media.key
        if key is not None:
            yield LocalReference("image", key, media.url, f"generalImages[{index}]")
    for step_index, step in enumerate(document.walkthrough):
        for media_index, media in enumerate(step.media):
            key = media.key
            if key is not None:
                yield LocalReference(
                    "image",
                    key,
                    media.url,
                    f"walkthrough[{step_index}].media[{media_index}]",
                    step_index=step_index,
                )
    for index, item in enumerate(document.attachments):
        key = item.key
        if key is not None and item.file_path is not None:
            yield LocalReference("attachment", key, item.file_path, f"downloadableExecutables[{index}]")


def referenced_keys(document: Document, kind: ReferenceKind) -> set[str]:
    """Return the set of blob keys of one kind referenced by a document."""
    return {ref.key for ref in iter_local_references(document) if ref.kind == kind}


def _map_media(document: Document, func: Callable[[MediaRef], MediaRef]) -> Document:
    return replace(
        document,
        general_images=tuple(func(media) for media in document.general_images),
        walkthrough=tuple(replace(step, media=tuple(func(media) for media in step.media)) for step in document.walkthrough),
    )


def rewrite_image_url(document: Document, old_url: str, new_url: str) -> Document:
    """Point every media reference at ``old_url`` to ``new_url`` and drop its preview handle."""

    def _rewrite(media: MediaRef) -> MediaRef:
        if media.url != old_url:
            return media
        return replace(media, url=new_url, preview_handle=None)

    return _map_media(document, _rewrite)


def set_preview_handle(document: Document, url: str, handle: str | None) -> Document:
    """Attach (or clear) the preview handle of every media reference at ``url``."""

    def _set(media: MediaRef) -> MediaRef:
        if media.url != url:
            return media
        return replace(media, preview_handle=handle)

    return _map_media(document, _set)


def strip_ephemeral(document: Document) -> Document:
    """Return a copy without runtime-only fields (preview handles)."""
    return _map_media(document, lambda media: replace(media, preview_handle=None))


def remove_reference(document: Document, url: str) -> Document:
    """Remove every media or attachment reference pointing at ``url``."""
    return replace(
        document,
        general_images=tuple(media for media in document.general_images if media.url != url),
        walkthrough=tuple(
            replace(step, media=tuple(media for media in step.media if media.url != url)) for step in document.walkthrough
        ),
        attachments=tuple(item for item in document.attachments if item.file_path != url),
    )


def update_step(document: Document, index: int, **changes: object) -> Document:
    """Return a copy with walkthrough step ``index`` replaced by ``replace(step, **changes)``."""
    if not 0 <= index < len(document.walkthrough):
        msg = f"step index {index} out of range."
        raise IndexError(msg)
    steps = list(document.walkthrough)
    steps[index] = replace(steps[index], **changes)  # type: ignore[arg-type]
    return replace(document, walkthrough=tuple(steps))


def add_step(document: Document, label: str) -> Document:
    """Return a copy with a new empty step appended."""
    return replace(document, walkthrough=(*document.walkthrough, Step(label=label)))
