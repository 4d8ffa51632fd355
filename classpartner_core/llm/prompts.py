"""
Prompt Builders and Response Parsers

Models do not reliably honour JSON instructions, so the parsers accept
raw JSON, JSON wrapped in code fences, a JSON object buried in prose,
and finally bullet lists or comma separated text.
"""

import json
import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from classpartner_core.llm.base import PromptContext


MAX_ITEMS = 8

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_BULLET_LINE_RE = re.compile(r"^(?:[-*•]\s+|\d+\.\s+)(.+)$")
_BULLET_ANY_RE = re.compile(r"(?:^|\n)\s*(?:[-*•]|\d+\.)\s*([^\n]+)")
_NEXT_STEPS_RE = re.compile(r"next\s+steps", re.IGNORECASE)


# =============================================================================
# Prompts
# =============================================================================


def summary_system_prompt(context: "PromptContext") -> str:
    sections = ["You are a concise, structured note-taker."]
    note = context.note()
    if note:
        sections.append(f"Follow these guidelines:\n{note}")
    if context.include_action_items:
        sections.append("Call out any action items or next steps that students should remember.")
    else:
        sections.append("Focus on conceptual summaries; action items are handled separately.")
    if context.emphasise_key_terms:
        sections.append("Emphasise key terms, formulas, or definitions explicitly.")
    return "\n\n".join(sections)


def summary_user_prompt(text: str) -> str:
    return f"Summarize clearly in <=1 short paragraph:\n\n{text}"


def _guideline_prefix(context: "PromptContext") -> str:
    note = context.note()
    return f"Guidelines:\n{note}\n\n" if note else ""


def actions_prompt(text: str, context: "PromptContext") -> str:
    return (
        f"{_guideline_prefix(context)}Extract action items as JSON exactly:\n"
        '{ "actions": [ { "title": string, "owner": string|null, '
        '"due": string|null, "ts": number|null } ] }\n'
        f"Transcript:\n{text}"
    )


def keywords_prompt(text: str, context: "PromptContext") -> str:
    return (
        f"{_guideline_prefix(context)}"
        'Return JSON { "keywords": [string] } with 3-8 concise keywords:\n'
        f"{text}"
    )


def answer_system_prompt(context: "PromptContext") -> str:
    sections = ["You are an assistant answering based on class snippets."]
    note = context.note()
    if note:
        sections.append(f"Follow these guidelines:\n{note}")
    return "\n\n".join(sections)


def answer_user_prompt(query: str, snippets: str) -> str:
    return (
        f"Query: {query}\n"
        f"Snippets:\n{snippets}\n\n"
        "Answer succinctly. If insufficient context, say so."
    )


# =============================================================================
# Parsing
# =============================================================================


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub(lambda m: m.group(1) or "", text or "").strip()


def extract_json_object(text: str, key: str) -> Optional[Dict[str, Any]]:
    """Find the innermost object enclosing the last `"key"` and parse it."""
    if not text:
        return None
    anchor = text.rfind(f'"{key}"')
    if anchor == -1:
        return None
    start = text.rfind("{", 0, anchor)
    if start == -1:
        return None

    depth = 0
    for index in range(start, len(text)):
        char = text[index]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                try:
                    value = json.loads(text[start:index + 1])
                except ValueError:
                    return None
                return value if isinstance(value, dict) else None
    return None


def _load_keyed(clean: str, key: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(clean)
    except ValueError:
        parsed = extract_json_object(clean, key)
    return parsed if isinstance(parsed, dict) else None


def normalize_action(raw: Any) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    if isinstance(raw, str):
        title = raw.strip()
        return {"title": title, "owner": None, "due": None, "ts": None} if title else None
    if isinstance(raw, dict):
        title = str(raw.get("title") or "").strip()
        if not title:
            return None
        return {
            "title": title,
            "owner": raw.get("owner"),
            "due": raw.get("due"),
            "ts": raw.get("ts"),
        }
    return None


def _fallback_actions(clean: str) -> List[Dict[str, Any]]:
    lines = [line.strip() for line in re.split(r"\n+", clean) if line.strip()]
    titles: List[str] = []

    for line in lines:
        if line.startswith("**"):
            continue
        match = _BULLET_LINE_RE.match(line)
        if match:
            titles.append(match.group(1).strip())

    if not titles:
        for index, line in enumerate(lines):
            if _NEXT_STEPS_RE.search(line):
                for candidate in lines[index + 1:]:
                    if candidate.startswith("**"):
                        break
                    titles.append(re.sub(r"^[*-]\s*", "", candidate).strip())
                    if len(titles) >= MAX_ITEMS:
                        break
                break

    actions = [normalize_action(title) for title in titles]
    return [action for action in actions if action][:MAX_ITEMS]


def parse_actions(content: str) -> List[Dict[str, Any]]:
    """Parse `{title, owner, due, ts}` action items from a model reply."""
    clean = strip_code_fences(content)
    if not clean:
        return []

    parsed = _load_keyed(clean, "actions")
    if parsed is not None and isinstance(parsed.get("actions"), list):
        actions = [normalize_action(item) for item in parsed["actions"]]
        return [action for action in actions if action][:MAX_ITEMS]

    return _fallback_actions(clean)


def parse_keywords(content: str) -> List[str]:
    """Parse up to eight unique keywords from a model reply."""
    clean = strip_code_fences(content)
    if not clean:
        return []

    parsed = _load_keyed(clean, "keywords")
    if parsed is not None and isinstance(parsed.get("keywords"), list):
        keywords = [str(item).strip() for item in parsed["keywords"]]
        return list(dict.fromkeys(kw for kw in keywords if kw))[:MAX_ITEMS]

    found: Dict[str, None] = {}
    for match in _BULLET_ANY_RE.finditer(clean):
        candidate = match.group(1).strip()
        if candidate:
            found[candidate] = None
        if len(found) >= MAX_ITEMS:
            break

    if not found:
        for part in re.split(r"[,;\n]", clean):
            part = part.strip()
            if part:
                found[part] = None
            if len(found) >= MAX_ITEMS:
                break

    return list(found)


__all__ = [
    "summary_system_prompt",
    "summary_user_prompt",
    "actions_prompt",
    "keywords_prompt",
    "answer_system_prompt",
    "answer_user_prompt",
    "strip_code_fences",
    "extract_json_object",
    "normalize_action",
    "parse_actions",
    "parse_keywords",
]
