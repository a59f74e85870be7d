"""Merging raw facts, generated content and an existing entry into one payload.

Everything here is pure: the same inputs always give the same payload, so the
merge can run for a preview and again for the final save without drifting.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Sequence

from app.errors import CategoryResolutionAmbiguous
from app.models.conversation import (
    CatalogEntry,
    Category,
    CategoryRef,
    MergedProductPayload,
    MetaEntry,
    PayloadAttribute,
    PayloadImage,
    RawFacts,
    StructuredContent,
    TagRef,
    UploadedImage,
)

FOCUS_KEYWORD_META = "_yoast_wpseo_focuskw"
MATERIAL_ATTRIBUTE = "Material"
CENTS = Decimal("0.01")


def format_price(value: Decimal | str | int | float) -> str:
    """Backend decimal-string convention: two fraction digits, half-up."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid price: {value!r}") from exc
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"Invalid price: {value!r}")
    return str(amount.quantize(CENTS, rounding=ROUND_HALF_UP))


def _text(*candidates: str | None) -> str | None:
    for value in candidates:
        if value is not None and value.strip():
            return value
    return None


def _resolve_price(raw: RawFacts, generated: StructuredContent, existing: CatalogEntry | None) -> str | None:
    candidates = [generated.regular_price, raw.price, existing.regular_price if existing else None]
    for candidate in candidates:
        if candidate is None or candidate == "":
            continue
        try:
            return format_price(candidate)
        except ValueError:
            continue
    return None


def match_category(name: str, known: Sequence[Category]) -> int | None:
    """Id of the known category with this name (case-insensitive), if unique."""
    wanted = name.strip().casefold()
    ids = sorted({c.id for c in known if c.name.strip().casefold() == wanted})
    if len(ids) > 1:
        raise CategoryResolutionAmbiguous(name, ids)
    return ids[0] if ids else None


def resolve_categories(names: Sequence[str], known: Sequence[Category]) -> list[CategoryRef]:
    refs: list[CategoryRef] = []
    seen: set[tuple[str, object]] = set()
    for name in names:
        if not name or not name.strip():
            continue
        try:
            category_id = match_category(name, known)
        except CategoryResolutionAmbiguous:
            category_id = None
        if category_id is not None:
            key: tuple[str, object] = ("id", category_id)
            ref = CategoryRef(id=category_id)
        else:
            key = ("name", name.strip().casefold())
            ref = CategoryRef(name=name.strip())
        if key not in seen:
            seen.add(key)
            refs.append(ref)
    return refs


def _resolve_images(
    images: Sequence[UploadedImage],
    generated: StructuredContent,
    existing: CatalogEntry | None,
    display_name: str,
) -> list[PayloadImage]:
    if not images and existing is not None:
        images = [UploadedImage(media_id=i.id, url=i.src, alt_text=i.alt) for i in existing.images]
    payload = []
    for index, image in enumerate(images):
        ai_alt = generated.images[index].alt if index < len(generated.images) else None
        alt = _text(ai_alt, image.alt_text) or display_name
        payload.append(PayloadImage(id=image.media_id, src=image.url, alt=alt))
    return payload


def _resolve_meta(raw: RawFacts, generated: StructuredContent, existing: CatalogEntry | None) -> list[MetaEntry]:
    if generated.meta_data:
        meta = [entry.model_copy() for entry in generated.meta_data]
    elif existing is not None:
        meta = [MetaEntry(key=entry.key, value=entry.value) for entry in existing.meta_data
                if not entry.key.startswith("_") or entry.key.startswith("_yoast")]
    else:
        meta = []
    if raw.focus_keywords and not any(entry.key == FOCUS_KEYWORD_META for entry in meta):
        focus = raw.focus_keywords.split(",")[0].strip()
        if focus:
            meta.append(MetaEntry(key=FOCUS_KEYWORD_META, value=focus))
    return meta


def merge_product(
    raw_facts: RawFacts,
    generated: StructuredContent | None,
    existing: CatalogEntry | None = None,
    *,
    known_categories: Sequence[Category] = (),
    images: Sequence[UploadedImage] = (),
    status: str = "draft",
) -> MergedProductPayload:
    """Build the backend payload.

    Each field comes from the generated content when it has a value, then from
    the existing entry (edits), then from the raw facts.
    """
    generated = generated or StructuredContent()

    name = _text(generated.name, existing.name if existing else None, raw_facts.product_name) or ""

    if generated.categories:
        categories = resolve_categories(generated.categories, known_categories)
    elif existing is not None:
        categories = [CategoryRef(id=c.id) if c.id is not None else CategoryRef(name=c.name)
                      for c in existing.categories]
    else:
        categories = []

    tag_names = [t for t in generated.tags if t and t.strip()]
    if not tag_names and existing is not None:
        tag_names = [t.name for t in existing.tags if t.name]
    tags = [TagRef(name=t) for t in dict.fromkeys(t.strip() for t in tag_names)]

    if generated.attributes:
        attributes = [PayloadAttribute(name=a.name, options=[a.option]) for a in generated.attributes]
    elif existing is not None and existing.attributes:
        attributes = [PayloadAttribute(name=a.name, options=list(a.options)) for a in existing.attributes]
    elif raw_facts.material:
        attributes = [PayloadAttribute(name=MATERIAL_ATTRIBUTE, options=[raw_facts.material])]
    else:
        attributes = []

    return MergedProductPayload(
        name=name,
        slug=_text(generated.slug, existing.slug if existing else None),
        regular_price=_resolve_price(raw_facts, generated, existing),
        description=_text(generated.description, existing.description if existing else None),
        short_description=_text(generated.short_description, existing.short_description if existing else None),
        categories=categories,
        tags=tags,
        attributes=attributes,
        images=_resolve_images(images, generated, existing, name),
        meta_data=_resolve_meta(raw_facts, generated, existing),
        status=status,
    )
