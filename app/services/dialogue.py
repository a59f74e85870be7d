"""The product conversation state machine.

One turn = one inbound message. A turn holds the session lock from loading
the state until the updated state is saved, and runs against a working copy
so a crash mid-turn leaves the last saved state untouched. A timed-out turn
keeps the facts and uploads it got through and falls back to a stable phase.

Phases::

    COLLECTING_FACTS -> GENERATING -> AWAITING_DECISION -> PERSISTING -> DONE
          ^                 |               |  |  ^              |
          +-- AI failure ---+               |  |  +-- failure ---+
          +------------ correction ---------+  +-- re-optimize -> GENERATING
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import aiosqlite

from app.config import Settings
from app.errors import AIGenerationFailure, MissingRequiredFact, PersistenceFailure
from app.models.conversation import (
    FACT_LABELS,
    FACT_NAMES,
    ConversationState,
    ImageFailure,
    InboundMessage,
    Phase,
    RawFacts,
    StructuredContent,
    TurnReply,
    UploadedImage,
)
from app.models.database import log_event, save_message
from app.services.business_settings import BusinessSettingsStore
from app.services.catalog import CatalogRepository
from app.services.facts import Intent, detect_intent, extract_facts, parse_price
from app.services.generator import ContentGenerator
from app.services.images import ImageIngestionPipeline
from app.services.merge import FOCUS_KEYWORD_META, MATERIAL_ATTRIBUTE, merge_product
from app.services.state_store import ConversationStateStore

logger = logging.getLogger(__name__)

WELCOME = (
    "Welcome! I can help you create products. Send me the details like this:\n"
    "name: Leather Sofa\nmaterial: leather\nprice: 5000\n"
    "(optional) amharic name: ..., keywords: ...\n"
    "and attach at least one photo."
)
CREATE_ACTION = "Create Product"
SAVE_CHANGES_ACTION = "Save Changes"
DRAFT_ACTION = "Save as Draft"
REOPTIMIZE_ACTION = "Re-optimize"
NEW_PRODUCT_ACTION = "New session"
RETRY_ACTION = "Try again"


@dataclass(frozen=True)
class DialogueConfig:
    required_facts: tuple[str, ...] = ("product_name", "material", "price")
    turn_timeout: float = 50.0
    watermark_by_default: bool = False

    def __post_init__(self):
        unknown = set(self.required_facts) - set(FACT_NAMES)
        if unknown:
            raise ValueError(f"Unknown required facts: {sorted(unknown)}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "DialogueConfig":
        return cls(
            required_facts=tuple(settings.REQUIRED_FACTS),
            turn_timeout=settings.TURN_TIMEOUT_SECONDS,
            watermark_by_default=settings.WATERMARK_BY_DEFAULT,
        )


def _plain(html: str | None, limit: int = 300) -> str:
    text = " ".join(re.sub(r"<[^>]+>", " ", html or "").split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


class ProductDialogue:
    def __init__(
        self,
        store: ConversationStateStore,
        pipeline: ImageIngestionPipeline,
        generator: ContentGenerator,
        catalog: CatalogRepository,
        business_settings: BusinessSettingsStore,
        config: DialogueConfig | None = None,
    ):
        self._store = store
        self._pipeline = pipeline
        self._generator = generator
        self._catalog = catalog
        self._business_settings = business_settings
        self._config = config or DialogueConfig()

    # -- Turn boundary --

    async def handle_turn(self, message: InboundMessage) -> TurnReply:
        """Process one inbound message and return the reply. Never raises for
        failures of the AI service, the media host or the commerce backend."""
        async with self._store.lock(message.session_id):
            try:
                state = await self._store.load(message.session_id)
            except PersistenceFailure as exc:
                logger.error("Session %s: could not load state: %s", message.session_id, exc.message)
                return TurnReply(
                    reply_text="I'm sorry, I couldn't open this conversation. Please try again.",
                    phase=Phase.COLLECTING_FACTS,
                    last_error=exc.message,
                )

            key = self._dedupe_key(message)
            if (key is not None and not message.reset and state.last_reply is not None
                    and state.last_inbound_key == key):
                logger.info("Session %s: duplicate message ignored", message.session_id)
                return state.last_reply

            working = state.model_copy(deep=True)
            try:
                reply = await asyncio.wait_for(self._run(working, message), timeout=self._config.turn_timeout)
            except asyncio.TimeoutError:
                logger.warning("Session %s: turn timed out in phase %s", message.session_id, working.phase.value)
                # Input absorbed and media uploaded so far are kept; only the phase rolls back.
                working.phase = self._stable_phase(working)
                working.last_error = "The request took too long and was cancelled."
                reply = self._reply(
                    working, "Sorry, that took too long. Your details and photos are kept, please try again."
                )
            except Exception:
                logger.exception("Session %s: unexpected failure", message.session_id)
                working = state
                working.last_error = "An internal error occurred."
                reply = self._reply(
                    working, "I'm sorry, I encountered an internal error. Please try again."
                )

            if working.phase is not state.phase:
                logger.info("Session %s: %s -> %s", message.session_id, state.phase.value, working.phase.value)
            # Only clean turns are replayed on re-send; a failed one can be retried as is.
            working.last_inbound_key = key if reply.last_error is None else None
            working.last_reply = reply if reply.last_error is None else None
            try:
                await self._store.save(working)
            except PersistenceFailure as exc:
                logger.error("Session %s: could not save state: %s", message.session_id, exc.message)
                state.last_error = exc.message
                return self._reply(state, "I'm sorry, I couldn't save that step. Please send it again.")
            await self._record_transcript(message, reply)
        return reply

    @staticmethod
    def _stable_phase(state: ConversationState) -> Phase:
        if state.phase is Phase.GENERATING:
            return Phase.AWAITING_DECISION if state.generated_content is not None else Phase.COLLECTING_FACTS
        if state.phase is Phase.PERSISTING:
            return Phase.AWAITING_DECISION
        return state.phase

    @staticmethod
    def _dedupe_key(message: InboundMessage) -> str | None:
        """Key for replaying re-sent messages.

        Without a transport message id, button presses (create, draft,
        re-optimize...) are always processed: repeating one is deliberate.
        """
        if message.message_id is None and not message.images and detect_intent(message.text) is not None:
            return None
        return message.dedupe_key()

    async def _record_transcript(self, message: InboundMessage, reply: TurnReply) -> None:
        db_path = self._store.db_path
        try:
            if message.text or message.images:
                text = message.text or ""
                if message.images:
                    text = f"{text} [{len(message.images)} image(s)]".strip()
                await save_message(db_path, message.session_id, "user", text)
            await save_message(db_path, message.session_id, "bot", reply.reply_text)
        except aiosqlite.Error as exc:
            logger.error("Session %s: could not record transcript: %s", message.session_id, exc)

    async def _run(self, state: ConversationState, message: InboundMessage) -> TurnReply:
        intent = detect_intent(message.text)
        if message.reset or intent is Intent.NEW_SESSION:
            state.start_new_product()
            state.last_error = None
            return self._reply(state, WELCOME)

        if message.edit_target_id is not None and message.edit_target_id != state.edit_target_id:
            return await self._begin_edit(state, message)

        if state.phase is Phase.DONE:
            state.start_new_product()
        if message.apply_watermark is not None:
            state.apply_watermark = message.apply_watermark

        if state.phase is Phase.COLLECTING_FACTS:
            return await self._collect(state, message)
        if state.phase is Phase.AWAITING_DECISION:
            return await self._decide(state, message, intent)
        if state.phase is Phase.GENERATING:
            # Transient phases never outlive a turn; recover if one was stored anyway.
            state.phase = Phase.COLLECTING_FACTS
            return await self._collect(state, message)
        if state.phase is Phase.PERSISTING:
            state.phase = Phase.AWAITING_DECISION
            return await self._decide(state, message, intent)
        raise AssertionError(f"Unhandled phase {state.phase}")

    # -- COLLECTING_FACTS --

    def _absorb(self, state: ConversationState, message: InboundMessage) -> None:
        """Apply images and facts from the message.

        Raises MissingRequiredFact for an unreadable price, after everything
        else in the message has been kept.
        """
        state.add_pending(message.images)
        facts = extract_facts(message.text, state.awaiting_fact)
        price = facts.pop("price", None)
        for name, value in facts.items():
            setattr(state.raw_facts, name, value)
        if price is not None:
            state.raw_facts.price = parse_price(price)

    async def _collect(self, state: ConversationState, message: InboundMessage | None = None) -> TurnReply:
        if message is not None:
            try:
                self._absorb(state, message)
            except MissingRequiredFact as exc:
                state.awaiting_fact = exc.fact
                state.last_error = exc.message
                return self._reply(state, f"{exc.message} What's the {FACT_LABELS[exc.fact]}?")

        missing = state.raw_facts.missing(self._config.required_facts)
        if missing:
            state.awaiting_fact = missing[0]
            state.last_error = None
            return self._reply(
                state,
                f"{self._facts_summary(state.raw_facts)}What's the {FACT_LABELS[missing[0]]}?",
            )

        state.awaiting_fact = None
        if not state.has_images():
            state.last_error = None
            return self._reply(
                state,
                f"{self._facts_summary(state.raw_facts)}Please attach at least one photo of the product.",
            )

        state.phase = Phase.GENERATING
        return await self._generate(state)

    @staticmethod
    def _facts_summary(facts: RawFacts) -> str:
        known = [f"{FACT_LABELS[name]}: {getattr(facts, name)}" for name in FACT_NAMES
                 if getattr(facts, name) not in (None, "")]
        if not known:
            return ""
        return "So far I have " + "; ".join(known) + ".\n"

    # -- GENERATING --

    async def _generate(self, state: ConversationState, previous: StructuredContent | None = None) -> TurnReply:
        failures: list[ImageFailure] = []
        notes: list[str] = []
        if state.pending_images:
            business = await self._business_settings.get()
            requested = state.apply_watermark
            if requested is None:
                requested = self._config.watermark_by_default
            before = list(state.uploaded_images)
            result = await self._pipeline.ingest(
                state.pending_images, business.watermark(), requested, on_uploaded=state.record_upload,
            )
            # record_upload saw completion order; keep the input order instead.
            state.uploaded_images = before
            state.add_uploaded(result.uploaded)
            state.pending_images = []
            failures = result.failures
            if result.warnings:
                notes.append("Some images were uploaded without the watermark.")
        if failures:
            notes.append(f"{len(failures)} image(s) could not be used: "
                         + "; ".join(f.detail for f in failures))

        if not state.uploaded_images:
            state.phase = Phase.COLLECTING_FACTS
            state.generated_content = None
            state.last_error = "None of the attached images could be uploaded."
            return self._reply(
                state,
                "\n".join(notes + ["Please attach another photo of the product."]),
                failures=failures,
            )

        try:
            categories = await self._catalog.list_categories()
        except PersistenceFailure as exc:
            logger.warning("Session %s: generating without categories: %s", state.session_id, exc.message)
            categories = []

        try:
            content = await self._generator.generate(state.raw_facts, categories, state.uploaded_images, previous)
        except AIGenerationFailure as exc:
            state.phase = Phase.COLLECTING_FACTS
            state.generated_content = None
            state.last_error = exc.message
            await log_event(self._store.db_path, state.session_id, "generation_failed", {"error": exc.message})
            return self._reply(
                state,
                "\n".join(notes + [f"I couldn't generate the product content: {exc.message}",
                                   "Your details and photos are kept. Send any message to try again."]),
                actions=[RETRY_ACTION],
                failures=failures,
            )

        state.generated_content = content
        state.phase = Phase.AWAITING_DECISION
        state.last_error = None
        return self._reply(
            state,
            "\n".join(notes + [self._preview(state)]),
            actions=self._decision_actions(state),
            failures=failures,
        )

    # -- AWAITING_DECISION --

    async def _decide(self, state: ConversationState, message: InboundMessage, intent: Intent | None) -> TurnReply:
        if not message.images:
            if intent is Intent.REOPTIMIZE:
                state.phase = Phase.GENERATING
                return await self._generate(state, previous=state.generated_content)
            if intent is Intent.CREATE:
                state.phase = Phase.PERSISTING
                return await self._persist(state, "publish")
            if intent is Intent.DRAFT:
                state.phase = Phase.PERSISTING
                return await self._persist(state, "draft")

        # Anything else corrects the facts; the generated draft is stale now.
        state.generated_content = None
        state.phase = Phase.COLLECTING_FACTS
        return await self._collect(state, message)

    def _decision_actions(self, state: ConversationState) -> list[str]:
        create = SAVE_CHANGES_ACTION if state.edit_target_id is not None else CREATE_ACTION
        return [create, DRAFT_ACTION, REOPTIMIZE_ACTION]

    def _preview(self, state: ConversationState) -> str:
        content = state.generated_content or StructuredContent()
        entry = state.existing_entry
        payload = merge_product(state.raw_facts, content, entry, images=state.uploaded_images)
        categories = content.categories or ([c.name for c in entry.categories] if entry else [])
        lines = [
            "Here is the product content:" if entry is None else "Here is the current product content:",
            f"**Name:** {payload.name}",
            f"**Price:** {payload.regular_price or '-'}",
            f"**Categories:** {', '.join(categories) or '-'}",
            f"**Tags:** {', '.join(t.name for t in payload.tags) or '-'}",
            f"**Images:** {len(payload.images)}",
        ]
        if payload.short_description:
            lines.append(f"**Summary:** {_plain(payload.short_description)}")
        lines.append("Create it, save it as a draft, re-optimize, or send corrections.")
        return "\n".join(lines)

    # -- PERSISTING --

    async def _persist(self, state: ConversationState, status: str) -> TurnReply:
        editing = state.edit_target_id is not None
        try:
            categories = await self._catalog.list_categories()
            payload = merge_product(
                state.raw_facts,
                state.generated_content,
                state.existing_entry,
                known_categories=categories,
                images=state.uploaded_images,
                status=status,
            )
            entry = await self._catalog.save(payload, state.edit_target_id)
        except PersistenceFailure as exc:
            state.phase = Phase.AWAITING_DECISION
            state.last_error = exc.message
            await log_event(self._store.db_path, state.session_id, "save_failed", {"error": exc.message})
            return self._reply(
                state,
                f"I'm sorry, I failed to save the product. The system reported an error: {exc.message}",
                actions=self._decision_actions(state),
            )

        await log_event(
            self._store.db_path,
            state.session_id,
            "product_updated" if editing else "product_created",
            {"product_id": entry.id, "status": status},
        )
        state.start_new_product()
        state.phase = Phase.DONE
        state.last_error = None
        if editing:
            text = f"Success! I've updated the product '{entry.name}'."
        elif status == "draft":
            text = f"Success! I've saved the product '{entry.name}' as a draft."
        else:
            text = f"Success! I've created and published the product '{entry.name}'."
        return self._reply(state, text + " Send the next product whenever you're ready.",
                           actions=[NEW_PRODUCT_ACTION])

    # -- Editing --

    async def _begin_edit(self, state: ConversationState, message: InboundMessage) -> TurnReply:
        state.start_new_product()
        state.apply_watermark = message.apply_watermark
        try:
            entry = await self._catalog.get_entry(message.edit_target_id)
        except PersistenceFailure as exc:
            state.last_error = exc.message
            return self._reply(state, f"I couldn't open that product: {exc.message}")

        state.edit_target_id = entry.id
        state.existing_entry = entry
        state.raw_facts = RawFacts(
            product_name=entry.name or None,
            material=entry.attribute_option(MATERIAL_ATTRIBUTE),
            price=self._seed_price(entry.regular_price),
            focus_keywords=str(entry.meta_value(FOCUS_KEYWORD_META) or "") or None,
        )
        state.add_uploaded([
            UploadedImage(media_id=image.id, url=image.src, alt_text=image.alt or None)
            for image in entry.images
        ])
        logger.info("Session %s: editing product %s", state.session_id, entry.id)

        has_input = bool(message.images) or bool(extract_facts(message.text))
        if not has_input and entry.has_complete_content() and state.uploaded_images:
            state.generated_content = StructuredContent()
            state.phase = Phase.AWAITING_DECISION
            state.last_error = None
            return self._reply(state, self._preview(state), actions=self._decision_actions(state))
        return await self._collect(state, message)

    @staticmethod
    def _seed_price(value: str) -> Decimal | None:
        try:
            price = Decimal(value)
        except (InvalidOperation, TypeError):
            return None
        return price if price.is_finite() and price >= 0 else None

    # -- Replies --

    @staticmethod
    def _reply(
        state: ConversationState,
        text: str,
        actions: list[str] | None = None,
        failures: list[ImageFailure] | None = None,
    ) -> TurnReply:
        return TurnReply(
            reply_text=text,
            suggested_actions=actions or [],
            phase=state.phase,
            last_error=state.last_error,
            image_failures=failures or [],
        )
