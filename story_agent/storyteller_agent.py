# story_agent/storyteller_agent.py

"""
Storyteller turn loop.

One turn moves through ``TurnPhase`` states:

    START -> RETRIEVING -> PROMPTING -> (TOOL_DISPATCH <-> PROMPTING)* -> COMMITTING -> DONE

with ERROR reachable from any of them. Failures before COMMITTING abort the
turn with nothing written. A failing tool call never aborts the turn: its
error is serialised and handed back to the model as that tool's result.
Direct-message ("texting") turns are ephemeral and leave the shared
transcript untouched.
"""

import json
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

from agents.tool_context import ToolContext
from agents.exceptions import ModelBehaviorError
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from config import get_config
from db.models import Card, MemoryInput, MessageRole, MemorySource
from db.store import StoryStore
from embedding.indexer import EmbeddingIndexer
from embedding.provider import EmbeddingProvider
from embedding.queue import EmbeddingQueue
from logic.chatgpt_integration import ChatModel, ChatReply, ToolCallRequest
from logic.model_options import resolve_image_model_id, resolve_model_id
from memory.cards import CardService
from memory.character_memory import MemoryService
from memory.memory_retriever import ContextRetriever, context_lines
from memory.resolver import EntityResolver
from openai_integration.message_utils import (
    build_chat_message,
    build_tool_message,
    extract_text,
    function_tools_to_chat_specs,
)
from story_agent.gm_settings import SettingsService
from story_agent.imagery import ImageGenerator
from story_agent.progressive_summarization import StorySummaryReconciler, SummaryResult
from story_agent.prompts import (
    SYSTEM_PREAMBLE,
    build_context_prompt,
    build_human_message,
    build_retrieval_query,
)
from story_agent.stories import StoryService, render_transcript
from story_agent.story_setup import StoryInitializer
from story_agent.tools import STORY_TOOLS, TurnContext
from utils.error_handling import (
    DungeonError,
    InvalidPayloadError,
    ToolExecutionError,
    UpstreamError,
    with_timeout,
)

logger = logging.getLogger(__name__)

# Fields the orchestrator owns; a model-supplied value is discarded.
CALLER_OWNED_KEYS = ("storyId", "story_id", "sessionId")


class TurnPhase(str, Enum):
    START = "start"
    RETRIEVING = "retrieving"
    PROMPTING = "prompting"
    TOOL_DISPATCH = "tool_dispatch"
    COMMITTING = "committing"
    DONE = "done"
    ERROR = "error"


class TurnAction(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    kind: Literal["do", "say", "continue"]
    text: Optional[str] = None

    @model_validator(mode="after")
    def _text_required(self):
        if self.kind in ("do", "say") and not self.text:
            raise ValueError(f"'{self.kind}' actions need text")
        return self


@dataclass
class TurnResult:
    text: str
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"text": self.text}
        if self.image_url:
            result["imageUrl"] = self.image_url
        return result


def _dump(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)


def _error_payload(code: str, message: str, **details: Any) -> str:
    payload = {"error": code, "message": message}
    payload.update(details)
    return _dump(payload)


def coerce_action(action: Union[TurnAction, Dict[str, Any]]) -> TurnAction:
    if isinstance(action, TurnAction):
        return action
    try:
        return TurnAction.model_validate(action)
    except ValidationError as exc:
        raise InvalidPayloadError(
            "Invalid player action",
            details={"errors": [
                {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()
            ]},
        ) from exc


def find_player_card(cards: Sequence[Card]) -> Optional[Card]:
    for card in cards:
        if card.type == "character" and (card.data or {}).get("isPlayerCharacter"):
            return card
    return None


def image_url_from_result(result: str) -> Optional[str]:
    """The ``imageUrl`` of a JSON tool result, if it carries one."""
    try:
        parsed = json.loads(result)
    except (TypeError, ValueError):
        return None
    if isinstance(parsed, dict):
        url = parsed.get("imageUrl")
        if isinstance(url, str) and url:
            return url
    return None


class StorytellerAgent:
    """Runs player turns against one storage backend and one chat model."""

    def __init__(
        self,
        store: StoryStore,
        chat_model: ChatModel,
        embedder: EmbeddingProvider,
        *,
        queue: Optional[EmbeddingQueue] = None,
        image_generator: Optional[ImageGenerator] = None,
        tools: Optional[Sequence[Any]] = None,
        rng: Optional[random.Random] = None,
        config=None,
    ):
        self.config = config or get_config()
        self.store = store
        self.chat_model = chat_model
        self.queue = queue or EmbeddingQueue()
        self.indexer = EmbeddingIndexer(store, embedder, self.queue)
        self.stories = StoryService(store)
        self.settings = SettingsService(store)
        self.cards = CardService(store, self.indexer)
        self.memories = MemoryService(store, self.indexer)
        self.resolver = EntityResolver(self.cards)
        self.retriever = ContextRetriever(store, embedder, self.indexer, self.memories, self.config)
        self.summarizer = StorySummaryReconciler(
            self.stories, self.cards, self.memories, self.resolver, chat_model, self.config
        )
        self.image_generator = image_generator
        self.tools = list(tools if tools is not None else STORY_TOOLS)
        self.tools_by_name = {tool.name: tool for tool in self.tools}
        self.tool_specs = function_tools_to_chat_specs(self.tools)
        self.rng = rng or random.Random()

    def initializer(self, model_id: Optional[str] = None) -> StoryInitializer:
        return StoryInitializer(self.stories, self.cards, self.memories, self.chat_model, model_id)

    async def summarize(self, story_id: str, model_id: Optional[str] = None) -> SummaryResult:
        await self.stories.get_story(story_id)
        return await self.summarizer.summarize(story_id, model_id)

    async def close(self) -> None:
        await self.queue.close()

    # ------------------------------------------------------------------
    # Tool dispatch
    # ------------------------------------------------------------------

    async def dispatch_tool_call(self, call: ToolCallRequest, context: TurnContext) -> str:
        """Run one tool call and return its result text; errors become error payloads."""
        tool = self.tools_by_name.get(call.name)
        if tool is None:
            logger.warning("Model called unknown tool %r", call.name)
            return _error_payload("UNKNOWN_TOOL", f"Unknown tool: {call.name}", tool=call.name)

        try:
            args = json.loads(call.arguments or "{}")
        except ValueError as exc:
            return _error_payload(InvalidPayloadError.code, f"Arguments are not valid JSON: {exc}", tool=call.name)
        if not isinstance(args, dict):
            return _error_payload(InvalidPayloadError.code, "Arguments must be a JSON object", tool=call.name)
        for key in CALLER_OWNED_KEYS:
            args.pop(key, None)
        arguments = json.dumps(args)
        tool_context = ToolContext(
            context=context,
            tool_name=call.name,
            tool_call_id=call.id,
            tool_arguments=arguments,
        )

        try:
            result = await with_timeout(
                tool.on_invoke_tool(tool_context, arguments),
                self.config.TOOL_TIMEOUT,
                f"tool:{call.name}",
            )
        except ModelBehaviorError as exc:
            logger.warning("Rejected arguments for tool %s: %s", call.name, exc)
            return _error_payload(InvalidPayloadError.code, str(exc), tool=call.name)
        except DungeonError as exc:
            logger.warning("Tool %s failed: %s", call.name, exc.message, exc_info=True)
            return _dump({**exc.to_dict(), "tool": call.name})
        except Exception as exc:
            logger.error("Tool %s raised unexpectedly", call.name, exc_info=True)
            error = ToolExecutionError(f"{call.name} failed: {exc}", details={"tool": call.name})
            return _dump(error.to_dict())
        return result if isinstance(result, str) else _dump(result)

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        action: Union[TurnAction, Dict[str, Any]],
        story_id: str,
        target_character_name: Optional[str] = None,
        model_id: Optional[str] = None,
        image_model_id: Optional[str] = None,
    ) -> TurnResult:
        action = coerce_action(action)
        target = (target_character_name or "").strip() or None
        model = resolve_model_id(model_id)
        phase = TurnPhase.START

        def enter(next_phase: TurnPhase) -> TurnPhase:
            logger.debug("Turn %s: %s -> %s", story_id, phase.value, next_phase.value)
            return next_phase

        try:
            await self.stories.get_story(story_id)
            cards = await self.cards.get_cards(story_id)
            cards_by_id = {card.id: card for card in cards}
            player_card = find_player_card(cards)
            settings = await self.settings.get_settings(story_id)
            messages = await self.stories.get_messages(story_id)

            phase = enter(TurnPhase.RETRIEVING)
            player_data = player_card.data if player_card else {}
            backstory = player_data.get("initialBackstorySummary") or player_data.get("initialBackstory")
            window = self.config.RETRIEVAL_MESSAGE_WINDOW
            query = build_retrieval_query(
                action.kind,
                action.text,
                recent_messages=messages[-window:] if window > 0 else [],
                backstory_summary=backstory,
                target_character=target,
            )
            retrieved = await self.retriever.retrieve_context(story_id, query)
            notes = context_lines(retrieved, cards_by_id)

            phase = enter(TurnPhase.PROMPTING)
            beginning = next((card for card in cards if card.type == "beginning"), None)
            conversation: List[Dict[str, Any]] = [
                build_chat_message("system", SYSTEM_PREAMBLE),
                build_chat_message("system", build_context_prompt(
                    settings,
                    render_transcript(messages),
                    notes,
                    cards,
                    beginning=beginning,
                    backstory_line=backstory,
                    target_character=target,
                    transcript_chars=self.config.TRANSCRIPT_WINDOW_CHARS,
                )),
                build_chat_message("user", build_human_message(action.kind, action.text)),
            ]
            reply: ChatReply = await self.chat_model.chat(conversation, model=model, tools=self.tool_specs)

            turn_context = TurnContext(
                story_id=story_id,
                cards=self.cards,
                memories=self.memories,
                resolver=self.resolver,
                summarizer=self.summarizer,
                image_generator=self.image_generator,
                model_id=model,
                image_model_id=resolve_image_model_id(image_model_id),
                rng=self.rng,
            )
            image_url: Optional[str] = None
            rounds = 0
            while reply.tool_calls and rounds < self.config.MAX_TOOL_ROUNDS:
                rounds += 1
                phase = enter(TurnPhase.TOOL_DISPATCH)
                conversation.append(reply.to_message())
                for call in reply.tool_calls:
                    logger.info("Story %s round %d: tool %s", story_id, rounds, call.name)
                    result = await self.dispatch_tool_call(call, turn_context)
                    image_url = image_url_from_result(result) or image_url
                    conversation.append(build_tool_message(call.id, result))
                phase = enter(TurnPhase.PROMPTING)
                reply = await self.chat_model.chat(conversation, model=model, tools=self.tool_specs)
            if reply.tool_calls:
                logger.warning(
                    "Story %s hit the tool round limit (%d); ignoring %d further calls",
                    story_id, self.config.MAX_TOOL_ROUNDS, len(reply.tool_calls),
                )

            text = extract_text(reply.content)
            if not text:
                raise UpstreamError("Model returned no narrative text", provider="llm")

            phase = enter(TurnPhase.COMMITTING)
            if target is None:
                await self._commit(story_id, action, text, image_url, player_card)

            phase = enter(TurnPhase.DONE)
            return TurnResult(text=text, image_url=image_url)
        except Exception:
            logger.error("Turn for story %s failed during %s", story_id, phase.value)
            raise

    async def _commit(
        self,
        story_id: str,
        action: TurnAction,
        text: str,
        image_url: Optional[str],
        player_card: Optional[Card],
    ) -> None:
        player_id = player_card.id if player_card else None
        memory_inputs: List[MemoryInput] = []

        if action.kind in ("say", "do"):
            line = f'You say: "{action.text}"' if action.kind == "say" else f"You do: {action.text}"
            player_message = await self.stories.add_message(story_id, MessageRole.YOU.value, line)
            memory_inputs.append(MemoryInput(
                story_id=story_id,
                summary=action.text,
                source_type=MemorySource.PLAYER.value,
                owner_card_id=player_id,
                source_message_id=player_message.id,
                context={"mode": action.kind},
                tags=["player", action.kind],
                importance=1,
            ))

        dm_message = await self.stories.add_message(story_id, MessageRole.DM.value, text, image_url)
        memory_inputs.append(MemoryInput(
            story_id=story_id,
            summary=text,
            source_type=MemorySource.DM.value,
            subject_card_id=player_id,
            source_message_id=dm_message.id,
            context={"mode": "story"},
            tags=["dm"],
            importance=1,
        ))
        await self.memories.record_memories(memory_inputs)


__all__ = [
    "StorytellerAgent",
    "TurnAction",
    "TurnPhase",
    "TurnResult",
    "CALLER_OWNED_KEYS",
    "coerce_action",
]
