# omintel/snapshot.py
import json
import logging
import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from omintel.documents import load_owned_document
from omintel.errors import UpstreamError, ValidationError
from omintel.identity import Identity
from omintel.llm import CompletionClient
from omintel.models import ACTION_SNAPSHOT
from omintel.repository import RowStore

logger = logging.getLogger(__name__)

SNAPSHOT_SYSTEM_PROMPT = (
    "You are an expert commercial real estate analyst. Analyze offering memorandums and "
    "extract key financial and investment data. Always return valid JSON."
)

SNAPSHOT_PROMPT = """Analyze this commercial real estate offering memorandum and extract key investment information. Return a JSON object with the following structure:

{{
  "propertyName": "string",
  "address": "string",
  "propertyType": "string",
  "askingPrice": number (in dollars, no commas),
  "noi": number (net operating income in dollars),
  "capRate": number (as percentage, e.g., 5.5 for 5.5%),
  "occupancy": number (as percentage),
  "totalUnits": number (if applicable),
  "yearBuilt": number,
  "highlights": ["string", ...] (3-5 key selling points),
  "risks": ["string", ...] (3-5 key risks or concerns)
}}

**Guidelines:**
- Look for NOI, cap rate, and asking price prominently
- Calculate cap rate if not explicitly stated (NOI / Asking Price * 100)
- Use null for anything the document does not state
- Highlights focus on positive investment attributes; risks on concerns or challenges

Document to analyze:
{document_text}"""

JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class PropertySnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    property_name: Optional[str] = Field(None, alias="propertyName")
    address: Optional[str] = None
    property_type: Optional[str] = Field(None, alias="propertyType")
    asking_price: Optional[float] = Field(None, alias="askingPrice")
    noi: Optional[float] = None
    cap_rate: Optional[float] = Field(None, alias="capRate")
    occupancy: Optional[float] = None
    total_units: Optional[int] = Field(None, alias="totalUnits")
    year_built: Optional[int] = Field(None, alias="yearBuilt")
    highlights: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)


def fallback_snapshot(document_name: str) -> PropertySnapshot:
    name = re.sub(r"\.pdf$", "", document_name, flags=re.I)
    return PropertySnapshot(
        property_name=name,
        address="Address not extracted",
        property_type="Commercial Real Estate",
        highlights=["Professional offering memorandum available"],
        risks=["Detailed analysis required"],
    )


def parse_snapshot(content: str) -> Optional[PropertySnapshot]:
    """Locate the JSON object in a model reply; None when it does not parse."""
    match = JSON_OBJECT_RE.search(content or "")
    raw = match.group(0) if match else content
    try:
        return PropertySnapshot.model_validate(json.loads(raw))
    except (TypeError, ValueError, PydanticValidationError) as e:
        logger.warning("Failed to parse snapshot JSON: %s", e)
        return None


class SnapshotService:
    def __init__(self, store: RowStore, llm: CompletionClient, model: str = "gpt-4o",
                 fallback_model: Optional[str] = "gpt-4o-mini", context_chars: int = 15000):
        self.store = store
        self.llm = llm
        self.model = model
        self.fallback_model = fallback_model
        self.context_chars = context_chars

    async def _complete(self, prompt: str) -> str:
        messages = [
            {"role": "system", "content": SNAPSHOT_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            return await self.llm.chat_completion(messages, model=self.model, temperature=0.1, max_tokens=2000)
        except UpstreamError:
            if not self.fallback_model:
                raise
            logger.warning("Primary snapshot model %s failed, trying %s", self.model, self.fallback_model)
        try:
            return await self.llm.chat_completion(messages, model=self.fallback_model, temperature=0.1, max_tokens=1500)
        except UpstreamError as e:
            raise UpstreamError(f"Failed to generate snapshot: {e.message}") from e

    async def generate(self, identity: Identity, document_id: str) -> dict:
        doc = await load_owned_document(self.store, document_id, identity)
        if not doc.extracted_text:
            raise ValidationError("Document text has not been extracted yet")

        logger.info("Generating snapshot for document_id=%s (%d chars)", doc.id, len(doc.extracted_text))
        prompt = SNAPSHOT_PROMPT.format(document_text=doc.extracted_text[: self.context_chars])
        content = await self._complete(prompt)

        snapshot = parse_snapshot(content) or fallback_snapshot(doc.name)

        try:
            await self.store.log_usage(doc.user_id, ACTION_SNAPSHOT, doc.id)
        except Exception:
            logger.exception("Failed to log snapshot usage for document_id=%s", doc.id)

        return {
            "success": True,
            "documentName": doc.name,
            "snapshot": snapshot.model_dump(by_alias=True),
        }
