# omintel/relay.py
"""
Chat relay: one user turn in, one persisted and streamed assistant reply out.

Write order per turn is fixed and consumers rely on it:
  1. user message row
  2. empty assistant placeholder row (its id goes in the first event),
     committed together with 1 or not at all
  3. upstream streaming call
  4. ``thread`` event {threadId, messageId}
  5. one ``content`` event per upstream delta (incremental text only)
  6. placeholder updated with the full text, then ``done`` and ``[DONE]``
  7. any failure after 2: a single ``error`` event ends the stream; the
     placeholder keeps whatever was accumulated
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

from omintel.errors import AuthError, NotFoundError, OMIntelError, ValidationError
from omintel.identity import Identity
from omintel.llm import CompletionClient
from omintel.models import STATUS_ERROR, STATUS_READY, Document
from omintel.repository import RowStore
from omintel.sse import DONE_FRAME, format_event

logger = logging.getLogger(__name__)

CONTEXT_CHARS = 6000
TITLE_CHARS = 100
BINARY_SAMPLE_CHARS = 200
BINARY_TEXT_ERROR = "Binary data detected - needs re-processing"

READABLE_RUN_RE = re.compile(r"[a-zA-Z]{10,}")

SYSTEM_PROMPT = """You are an expert commercial real estate analyst and investment advisor with deep expertise in analyzing offering memorandums (OMs), investment packages, and financial documents.

**Your Core Expertise:**
- Financial Analysis: NOI, cap rates, cash flow analysis, DCF modeling, sensitivity analysis
- Market Analysis: Comparables, market trends, submarket dynamics, demographic analysis
- Due Diligence: Risk assessment, environmental concerns, legal issues, tenant analysis
- Investment Metrics: IRR, NPV, equity multiple, DSCR, LTV, yield on cost

**Response Guidelines:**
1. Reference exact numbers, percentages, and metrics from the document
2. Prioritize financial analysis and investment implications
3. Identify both opportunities and risks
4. Use standard commercial real estate terminology
5. Provide practical recommendations and next steps"""


def thread_title(message: str) -> str:
    if len(message) > TITLE_CHARS:
        return message[:TITLE_CHARS] + "..."
    return message


def looks_like_binary(text: str) -> bool:
    """Raw PDF object syntax instead of prose: dictionary delimiters and names, no real words."""
    sample = text[:BINARY_SAMPLE_CHARS]
    has_pdf_syntax = "<<" in sample and ">>" in sample and "/" in sample
    return has_pdf_syntax and not READABLE_RUN_RE.search(sample)


def build_system_prompt(doc: Optional[Document], context_chars: int = CONTEXT_CHARS) -> str:
    if doc is None:
        return SYSTEM_PROMPT
    if doc.status == STATUS_READY and doc.extracted_text:
        return (
            f"{SYSTEM_PROMPT}\n\n**CURRENT DOCUMENT ANALYSIS:**\n"
            f'Document: "{doc.name}"\n\n'
            f"**DOCUMENT CONTENT:**\n{doc.extracted_text[:context_chars]}\n\n"
            "Reference specific numbers and data points from this document in your answers."
        )
    if doc.status == STATUS_ERROR:
        note = (f'Document "{doc.name}" failed to process (error: {doc.error_message or "unknown error"}). '
                "Let the user know it needs to be re-uploaded before its content can be analyzed.")
    else:
        note = (f'Document "{doc.name}" is still being processed. If the user asks about it, '
                "let them know its content is not yet available for analysis.")
    return f"{SYSTEM_PROMPT}\n\nNote: {note}"


@dataclass
class ChatTurn:
    identity: Identity
    thread_id: str
    user_message_id: str
    message_id: str                   # assistant placeholder
    messages: List[Dict[str, str]]


class ChatRelay:
    def __init__(self, store: RowStore, llm: CompletionClient,
                 context_chars: int = CONTEXT_CHARS, allow_anonymous: bool = False):
        self.store = store
        self.llm = llm
        self.context_chars = context_chars
        self.allow_anonymous = allow_anonymous

    def resolve_identity(self, identity: Optional[Identity]) -> Identity:
        if identity is not None:
            return identity
        if not self.allow_anonymous:
            raise AuthError("Authentication required. Please sign in to use chat.")
        anonymous = Identity.anonymous_user()
        logger.info("No authenticated user; using anonymous id %s", anonymous.id)
        return anonymous

    async def _context_document(self, identity: Identity, document_id: Optional[str]) -> Optional[Document]:
        if not document_id:
            return None
        doc = await self.store.get_document(document_id)
        if doc is None or doc.user_id != identity.id:
            logger.info("Document %s not available to %s; using generic prompt", document_id, identity.id)
            return None
        if doc.status == STATUS_READY and doc.extracted_text and looks_like_binary(doc.extracted_text):
            logger.warning("Document %s holds binary data instead of text; marking for re-processing", doc.id)
            return await self.store.mark_document_error(doc.id, BINARY_TEXT_ERROR)
        return doc

    async def start_turn(self, identity: Optional[Identity], message: Optional[str],
                         thread_id: Optional[str] = None, document_id: Optional[str] = None) -> ChatTurn:
        """Resolve the thread and write the user message and the placeholder (steps 1-2)."""
        if not message or not message.strip():
            raise ValidationError("Message is required")
        identity = self.resolve_identity(identity)

        if thread_id:
            thread = await self.store.get_thread(thread_id)
            if thread is None or thread.user_id != identity.id:
                raise NotFoundError("Thread not found")
            document_id = thread.document_id or document_id
        else:
            thread = await self.store.create_thread(identity.id, thread_title(message), document_id)
            logger.info("Created thread %s for %s", thread.id, identity.id)

        doc = await self._context_document(identity, document_id)
        system_prompt = build_system_prompt(doc, self.context_chars)

        user_message, placeholder = await self.store.add_turn_messages(thread.id, message)

        return ChatTurn(
            identity=identity,
            thread_id=thread.id,
            user_message_id=user_message.id,
            message_id=placeholder.id,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": message},
            ],
        )

    async def stream(self, turn: ChatTurn) -> AsyncIterator[str]:
        """Steps 3-7 as SSE frames."""
        thread_event = format_event({"type": "thread", "threadId": turn.thread_id, "messageId": turn.message_id})
        accumulated: List[str] = []
        thread_sent = False
        try:
            async with self.llm.open_chat_stream(turn.messages) as upstream:
                yield thread_event
                thread_sent = True
                async for delta in upstream.deltas():
                    accumulated.append(delta)
                    yield format_event({"type": "content", "content": delta})

            full_content = "".join(accumulated)
            await self.store.update_message_content(turn.message_id, full_content)
            logger.info("Chat turn finished thread=%s message=%s chars=%d",
                        turn.thread_id, turn.message_id, len(full_content))
            yield format_event({"type": "done"})
            yield DONE_FRAME
        except (asyncio.CancelledError, GeneratorExit):
            logger.warning("Client disconnected from thread=%s message=%s; discarding %d chunks",
                           turn.thread_id, turn.message_id, len(accumulated))
            raise
        except Exception as e:
            logger.exception("Stream error thread=%s message=%s", turn.thread_id, turn.message_id)
            if accumulated:
                try:
                    await self.store.update_message_content(turn.message_id, "".join(accumulated))
                except Exception:
                    logger.exception("Failed to keep partial content for message %s", turn.message_id)
            if not thread_sent:
                yield thread_event
            message = e.message if isinstance(e, OMIntelError) else "Internal server error"
            yield format_event({"type": "error", "error": message})
