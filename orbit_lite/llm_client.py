"""
Analysis Collaborator Client
============================

Thin async client for an OpenAI-compatible chat completions endpoint.

The collaborator is opaque and fallible: every public method returns None on
any failure (no API key, HTTP error, empty or unparseable content) and never
raises. Inputs are reduced to the fields the prompt needs; attached files and
blob ids are never sent.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError as SchemaError

from .editing import new_id, now_ms
from .schemas import (
    AIAnalysisResult,
    MaterialSuggestion,
    Matter,
    Template,
    TaskStatus,
    WorkStatusResult,
)
from .transformer import template_from_skeleton

logger = logging.getLogger(__name__)

WEEK_MS = 7 * 24 * 60 * 60 * 1000


@dataclass
class LLMCallResult:
    """Result from a chat completions call"""
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    raw_response: Optional[Dict] = None
    success: bool = True
    error: Optional[str] = None


def parse_json_robust(content: str) -> Tuple[Optional[Any], bool, str]:
    """
    Parse JSON content robustly, handling common LLM output issues.

    Handles:
    - Empty content
    - Markdown code blocks (```json...```)
    - Prefix text before the JSON value
    - Trailing text after it (largest balanced {...} or [...] block wins)

    Returns:
        Tuple of (parsed value, success, error_message)
    """
    if not content:
        return None, False, "Empty content"

    content = content.strip()

    if "```json" in content:
        start = content.find("```json") + 7
        end = content.find("```", start)
        if end > start:
            content = content[start:end].strip()
    elif "```" in content:
        start = content.find("```") + 3
        end = content.find("```", start)
        if end > start:
            content = content[start:end].strip()

    if content:
        try:
            return json.loads(content), True, ""
        except json.JSONDecodeError:
            pass

    blocks = []
    for open_char, close_char in (("{", "}"), ("[", "]")):
        depth = 0
        start_idx = None
        for i, char in enumerate(content):
            if char == open_char:
                if depth == 0:
                    start_idx = i
                depth += 1
            elif char == close_char and depth > 0:
                depth -= 1
                if depth == 0 and start_idx is not None:
                    blocks.append(content[start_idx:i + 1])
                    start_idx = None

    for block in sorted(blocks, key=len, reverse=True):
        try:
            return json.loads(block), True, ""
        except json.JSONDecodeError:
            continue

    return None, False, "No JSON value found"


# =============================================================================
# PROMPTS
# =============================================================================

TIMELINE_PROMPT = """
You are an objective legal-operations analyst. Summarize and compare the
judgment timeline of the CURRENT matter against the HISTORY of other matters.

Rules:
1. Only analyze existing judgment records. Never produce new conclusions or advice.
2. Stay strictly factual and neutral.
3. Output plain JSON, no Markdown.

Fields:
- summary (string): 3-5 lines on overall progress, main blockers, whether it is under control.
- evolution (string): how the judged status and key descriptions evolved over time.
- blockerTags (string array): 1-3 short category labels for recurring blockers.
- similarCases (array): history matters with a similar judgment pattern (empty if none),
  each {"matterName", "similarity", "facts"}.

Input: {"current": {title, timeline: [{date, status, content}]}, "history": [...]}
"""

WORK_STATUS_PROMPT = """
You are the situational-awareness assistant of a legal-operations workbench.
From the state, judgments and task progress of all active matters, write a
work status digest. Describe facts only. Output plain JSON, no Markdown.

Fields:
- overview (string): one sentence on the distribution (in progress / blocked / done).
- blockerTypes (array): 1-3 blocker categories, [{"tag": "...", "count": n}].
- updateRhythm (string): point out matters whose last judgment is older than 7 days.
- workload (string, optional): workload impression.
- actionPlan (string): next steps and dates mentioned in lastJudgmentContent and
  recentUpdate, one per line, no list markers; otherwise the most urgent blocked items.
"""

TEMPLATE_PROMPT = """
You are a process expert. The user describes a piece of work, a summary or a
procedure. Extract a structured workflow template from it.

Output plain JSON (no Markdown):
{"name": str, "description": str,
 "stages": [{"title": str,
             "tasks": [{"title": str, "description": str,
                        "materials": [{"name": str, "category": "DELIVERABLE" | "REFERENCE"}]}]}]}

Infer a sensible stage breakdown, make task names concrete, and list any
documents mentioned as materials.
"""

MATERIALS_PROMPT = """
You are an administrative / legal assistant. Extract every document, material
or certificate name from the user's text and classify it:
- REFERENCE: material the user consults (templates, regulations, examples)
- DELIVERABLE: a document the user must produce, sign or obtain

Output a plain JSON array (no Markdown):
[{"name": "Articles of association", "category": "REFERENCE"}]
"""

SUMMARY_PROMPT = """
You are an expert legal-operations assistant for a corporate affairs manager.
Review the current state of one matter and write a concise executive summary.

Statuses carry the user's judgment:
- BLOCKED: waiting for someone or something.
- EXCEPTION: the standard process was deviated from (important to note).
- SKIPPED: the step was deemed unnecessary.

Write three short sections in plain text:
1. Summary: two sentences on where the matter stands.
2. Bottlenecks: what blocks progress (BLOCKED tasks or missing materials).
3. Action items: the next 2-3 logical steps.

Tone: professional, direct, helpful.
"""


def _iso_day(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).date().isoformat()


def _timeline_payload(matter: Matter) -> Dict[str, Any]:
    return {
        "id": matter.id,
        "title": matter.title,
        "timeline": [
            {
                "date": _iso_day(r.timestamp),
                "status": r.status.value if r.status else None,
                "content": r.content,
            }
            for r in matter.judgment_timeline
        ],
    }


def _summary_payload(matter: Matter) -> Dict[str, Any]:
    return {
        "title": matter.title,
        "type": matter.type,
        "stages": [
            {
                "stage": stage.title,
                "tasks": [
                    {
                        "title": task.title,
                        "status": task.status.value,
                        "note": task.status_updates[0].content if task.status_updates else task.status_note,
                        "missingMaterials": [m.name for m in task.materials if not m.is_ready],
                    }
                    for task in stage.tasks
                ],
            }
            for stage in matter.stages
        ],
    }


def _work_status_payload(matters: List[Matter], now: int) -> List[Dict[str, Any]]:
    payload = []
    for matter in matters:
        if matter.archived:
            continue
        latest = matter.judgment_timeline[0] if matter.judgment_timeline else None
        active_tasks = []
        for stage in matter.stages:
            for task in stage.tasks:
                if task.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED):
                    continue
                recent = any(now - u.timestamp < WEEK_MS for u in task.status_updates)
                due_soon = task.due_date is not None and task.due_date - now < WEEK_MS
                if recent or due_soon or task.status == TaskStatus.BLOCKED:
                    active_tasks.append({
                        "title": task.title,
                        "status": task.status.value,
                        "dueDate": _iso_day(task.due_date) if task.due_date else None,
                        "recentUpdate": task.status_updates[0].content if task.status_updates else None,
                    })
        payload.append({
            "id": matter.id,
            "title": matter.title,
            "currentStatus": (matter.overall_status or TaskStatus.PENDING).value,
            "lastJudgmentContent": latest.content if latest else "No judgment recorded",
            "lastJudgmentTime": _iso_day(latest.timestamp) if latest else "none",
            "activeTasks": active_tasks,
        })
    return payload


# =============================================================================
# CLIENT
# =============================================================================

class AnalysisClient:
    """
    Async client for the analysis collaborator.

    Provides the analysis operations over one chat completions endpoint.
    """

    CHAT_PATH = "/v1/chat/completions"

    def __init__(
        self,
        api_key: Optional[str],
        api_host: str = "https://api.chatanywhere.tech",
        model: str = "gpt-3.5-turbo",
        timeout: int = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.api_host = api_host.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings=None) -> "AnalysisClient":
        from .config import get_settings
        settings = settings or get_settings()
        return cls(
            api_key=settings.llm_api_key,
            api_host=settings.llm_api_host,
            model=settings.llm_model,
            timeout=settings.llm_timeout,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        """Close the HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def call(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.3,
    ) -> LLMCallResult:
        """
        Make one chat completions call.

        Args:
            messages: List of message dicts with role and content
            temperature: Sampling temperature

        Returns:
            LLMCallResult with content or error
        """
        if not self.api_key:
            return LLMCallResult(
                content="",
                model=self.model,
                success=False,
                error="API key not configured"
            )

        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            client = await self._get_client()
            response = await client.post(
                f"{self.api_host}{self.CHAT_PATH}",
                json=payload,
                headers=headers
            )
            response.raise_for_status()
            data = response.json()

            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError) as e:
                logger.error(f"Chat completions response missing content: {e}")
                return LLMCallResult(
                    content="",
                    model=self.model,
                    success=False,
                    error=f"Response missing content: {e}",
                    raw_response=data
                )

            usage = data.get("usage") or {}
            return LLMCallResult(
                content=content or "",
                model=self.model,
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
                raw_response=data,
                success=True
            )

        except httpx.HTTPStatusError as e:
            logger.error(f"Analysis API error: {e.response.status_code}")
            return LLMCallResult(
                content="",
                model=self.model,
                success=False,
                error=f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Analysis request failed: {e}")
            return LLMCallResult(
                content="",
                model=self.model,
                success=False,
                error=str(e)
            )

    async def _call_json(self, system_prompt: str, user_content: str, temperature: float = 0.3) -> Optional[Any]:
        result = await self.call(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            temperature=temperature,
        )
        if not result.success:
            logger.warning(f"Analysis call failed: {result.error}")
            return None
        data, ok, error = parse_json_robust(result.content)
        if not ok:
            logger.warning(f"Analysis returned unparseable content: {error}")
            return None
        return data

    # -------------------------------------------------------------------------
    # OPERATIONS
    # -------------------------------------------------------------------------

    async def analyze_judgment_timeline(
        self, matter: Matter, all_matters: List[Matter]
    ) -> Optional[AIAnalysisResult]:
        """Summarize a matter's judgment log against other matters' logs"""
        if not self.enabled:
            return None
        history = [
            _timeline_payload(m) for m in all_matters
            if m.id != matter.id and m.judgment_timeline
        ]
        user = json.dumps({"current": _timeline_payload(matter), "history": history}, ensure_ascii=False)
        data = await self._call_json(TIMELINE_PROMPT, user)
        if not isinstance(data, dict):
            return None
        try:
            result = AIAnalysisResult.model_validate(data)
        except SchemaError as e:
            logger.warning(f"Timeline analysis did not match the schema: {e}")
            return None
        return result.model_copy(update={"id": new_id(), "timestamp": now_ms()})

    async def summarize_matter(self, matter: Matter) -> Optional[str]:
        """Plain-text executive summary of one matter"""
        if not self.enabled:
            return None
        result = await self.call([
            {"role": "system", "content": SUMMARY_PROMPT},
            {"role": "user", "content": json.dumps(_summary_payload(matter), ensure_ascii=False)},
        ])
        if not result.success:
            logger.warning(f"Matter summary failed: {result.error}")
            return None
        return result.content.strip() or None

    async def analyze_work_status(
        self, matters: List[Matter], now: Optional[int] = None
    ) -> Optional[WorkStatusResult]:
        """Digest of all active matters; None when there are none"""
        if not self.enabled:
            return None
        payload = _work_status_payload(matters, now or now_ms())
        if not payload:
            return None
        data = await self._call_json(WORK_STATUS_PROMPT, json.dumps(payload, ensure_ascii=False))
        if not isinstance(data, dict):
            return None
        try:
            result = WorkStatusResult.model_validate(data)
        except SchemaError as e:
            logger.warning(f"Work status did not match the schema: {e}")
            return None
        return result.model_copy(update={"timestamp": now_ms()})

    async def generate_template_from_text(self, text: str) -> Optional[Template]:
        """Template skeleton inferred from a free-text procedure description"""
        if not self.enabled or not (text or "").strip():
            return None
        data = await self._call_json(TEMPLATE_PROMPT, text, temperature=0.5)
        if not isinstance(data, dict):
            return None
        template = template_from_skeleton(data)
        if not template.stages:
            logger.warning("Generated template has no stages")
            return None
        return template

    async def parse_materials_from_text(self, text: str) -> Optional[List[MaterialSuggestion]]:
        """Material names and categories extracted from free text"""
        if not self.enabled or not (text or "").strip():
            return None
        data = await self._call_json(MATERIALS_PROMPT, text)
        if isinstance(data, dict):
            data = data.get("materials")
        if not isinstance(data, list):
            return None
        suggestions = []
        for item in data:
            try:
                suggestions.append(MaterialSuggestion.model_validate(item))
            except SchemaError:
                logger.debug(f"Skipping malformed material suggestion: {item!r}")
        return suggestions
