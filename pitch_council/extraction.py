"""Turn free-form agent replies into StartupPitch / InvestmentVerdict / ReadinessAssessment.

Every extractor is total: whatever the input (empty, prose, broken JSON) it
returns a structurally complete object. Strategy per field:

1. the first balanced ``{...}`` span that parses as a JSON object
2. a ``label: value`` line (case-insensitive, markdown decoration tolerated)
3. for list fields, a bracketed comma-separated span or bullet lines under the label
4. a descriptive placeholder
"""

import json
import logging
import re
from typing import Any

from pitch_council.models import Decision, InvestmentVerdict, ReadinessAssessment, StartupPitch

logger = logging.getLogger(__name__)

# field -> accepted labels (JSON keys are compared after normalisation)
_PITCH_LABELS: dict[str, tuple[str, ...]] = {
    "name": ("name", "startup name", "company name"),
    "problem": ("problem",),
    "solution": ("solution",),
    "market": ("market", "target market"),
    "business_model": ("business model", "businessModel", "monetization"),
    "competitive_advantage": ("competitive advantage", "competitiveAdvantage", "competitive"),
    "execution_plan": ("execution plan", "executionPlan", "execution"),
}

PITCH_PLACEHOLDERS: dict[str, str] = {
    "name": "Startup Concept",
    "problem": "Problem to be determined",
    "solution": "Solution in development",
    "market": "Market analysis needed",
    "business_model": "Business model TBD",
    "competitive_advantage": "Competitive analysis needed",
    "execution_plan": "Execution plan in progress",
}

_LIST_LABELS: dict[str, tuple[str, ...]] = {
    "strengths": ("strengths", "pros"),
    "concerns": ("concerns", "risks", "weaknesses"),
    "recommended_next": ("recommended next", "recommendedNext", "recommended next steps", "next steps"),
}

LIST_PLACEHOLDERS: dict[str, list[str]] = {
    "strengths": ["Concept has potential"],
    "concerns": ["Execution challenges exist"],
    "recommended_next": ["Develop MVP", "Market validation"],
}

REASONING_PLACEHOLDER = "Based on comprehensive analysis"

# Confidence used when the decision is known but no figure was given
_LABELLED_CONFIDENCE = {Decision.INVEST: 60, Decision.PASS: 40}
# Confidence used when the decision had to be guessed from prose
_HEURISTIC_CONFIDENCE = {Decision.INVEST: 50, Decision.PASS: 30}

_NEGATIONS = (
    "not", "no", "never", "don't", "dont", "won't", "wont", "wouldn't", "wouldnt",
    "cannot", "can't", "cant", "shouldn't", "unable", "decline", "declining", "refuse",
)

_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$")


def _normalize_key(key: str) -> str:
    return re.sub(r"[\s_\-]", "", key).lower()


def _label_pattern(label: str) -> str:
    # "business model" / "businessModel" / "business_model" all match
    words = re.findall(r"[A-Za-z][a-z]*|[A-Z]+(?![a-z])", label)
    return r"[\s_\-]*".join(re.escape(w) for w in words)


def find_json_object(text: str) -> dict[str, Any] | None:
    """Return the first balanced ``{...}`` span of ``text`` that parses as a JSON object."""
    start = text.find("{")
    while start != -1:
        end = _balanced_end(text, start)
        if end is None:
            # Unclosed brace: a later object may still be complete
            start = text.find("{", start + 1)
            continue
        try:
            data = json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return data
        start = text.find("{", start + 1)
    return None


def _balanced_end(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def _json_section(data: dict[str, Any] | None, section: str) -> dict[str, Any]:
    """Return ``data[section]`` when it is a nested object, else ``data`` itself."""
    if not data:
        return {}
    for key, value in data.items():
        if _normalize_key(key) == section and isinstance(value, dict):
            return value
    return data


def _json_value(data: dict[str, Any], field_name: str, labels: tuple[str, ...]) -> Any:
    wanted = {_normalize_key(field_name)} | {_normalize_key(label) for label in labels}
    for key, value in data.items():
        if _normalize_key(key) in wanted and value not in (None, "", []):
            return value
    return None


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        parts = [p for p in (_as_text(v) for v in value) if p]
        return "; ".join(parts) or None
    return None


def _as_list(value: Any) -> list[str] | None:
    if isinstance(value, list):
        items = [t for t in (_as_text(v) for v in value) if t]
        return items or None
    text = _as_text(value)
    return [text] if text else None


def extract_field(text: str, labels: tuple[str, ...]) -> str | None:
    """Return the rest of the first line introduced by any of ``labels``."""
    for label in labels:
        pattern = re.compile(
            rf"^[ \t>*#\-•\"'\d.]*\**{_label_pattern(label)}[\"']?\**[ \t]*[:\-–][ \t]*\**[ \t]*(?P<value>.+?)[ \t]*$",
            re.IGNORECASE | re.MULTILINE,
        )
        match = pattern.search(text)
        if match:
            value = match.group("value").strip().strip(",").strip().strip("\"'*").strip()
            if value and value not in ("[", "{"):
                return value
    return None


def extract_list(text: str, labels: tuple[str, ...]) -> list[str] | None:
    """Return the items listed under any of ``labels``, bracketed or bulleted."""
    for label in labels:
        bracketed = re.search(
            rf"{_label_pattern(label)}[\"']?\**[ \t]*[:\-][ \t]*\[(?P<items>.+?)\]",
            text,
            re.IGNORECASE | re.DOTALL,
        )
        if bracketed:
            parts = [
                part.strip().strip("\"'").strip()
                for part in bracketed.group("items").split(",")
            ]
            parts = [part for part in parts if part]
            if parts:
                return parts

        heading = re.search(
            rf"^[ \t>*#\-•\d.]*\**{_label_pattern(label)}\**[ \t]*:?\**[ \t]*$",
            text,
            re.IGNORECASE | re.MULTILINE,
        )
        if heading:
            items: list[str] = []
            for line in text[heading.end():].lstrip("\r\n").splitlines():
                bullet = _BULLET_RE.match(line)
                if not bullet:
                    break
                items.append(bullet.group(1).strip("*").strip())
            if items:
                return items
    return None


def extract_pitch(text: str) -> StartupPitch:
    """Build a StartupPitch from ``text``; unresolved fields get placeholders."""
    data = _json_section(find_json_object(text), "pitch")
    values: dict[str, str] = {}
    unresolved: list[str] = []
    for field_name, labels in _PITCH_LABELS.items():
        value = _as_text(_json_value(data, field_name, labels)) or extract_field(text, labels)
        if value is None:
            unresolved.append(field_name)
            value = PITCH_PLACEHOLDERS[field_name]
        values[field_name] = value
    if unresolved:
        logger.debug("Pitch fields filled with placeholders: %s", ", ".join(unresolved))
    return StartupPitch(**values)


def _decision_from_value(value: Any) -> Decision | None:
    if isinstance(value, bool):
        return Decision.INVEST if value else Decision.PASS
    text = _as_text(value)
    if not text:
        return None
    lowered = text.lower()
    if lowered.startswith(("invest", "yes")):
        return Decision.INVEST
    if lowered.startswith(("pass", "no")):
        return Decision.PASS
    return None


def _is_negated(text: str, position: int) -> bool:
    preceding = re.findall(r"[a-z']+", text[max(0, position - 40):position].lower())[-3:]
    return any(word in _NEGATIONS for word in preceding)


def infer_decision(text: str) -> Decision:
    """Guess invest/pass from prose.

    ``invest`` counts only as a whole word, so "investment risk" or "investor"
    do not qualify, and any negated occurrence ("will not invest") wins. With no
    clear signal the answer is ``PASS``.
    """
    occurrences = [m.start() for m in re.finditer(r"\binvest\b", text, re.IGNORECASE)]
    if not occurrences:
        return Decision.PASS
    if any(_is_negated(text, pos) for pos in occurrences):
        return Decision.PASS
    return Decision.INVEST


def _parse_confidence(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        fraction = isinstance(value, float) and 0 < number <= 1
        return _clamp(round(number * 100) if fraction else round(number))
    text = _as_text(value)
    if not text:
        return None
    match = re.search(r"(\d{1,3}(?:\.\d+)?)\s*(%|/\s*10\b|/\s*100\b)?", text)
    if not match:
        return None
    return _scaled(match.group(1), match.group(2))


def _scaled(number: str, suffix: str | None) -> int:
    value = float(number)
    if suffix and suffix.replace(" ", "") == "/10":
        value *= 10
    return _clamp(round(value))


def _clamp(value: int) -> int:
    return max(0, min(100, value))


def _confidence_from_text(text: str) -> int | None:
    match = re.search(
        r"confidence(?:\s+level)?[\"']?\**\s*(?:is|of|[:\-=])?\s*\**\s*(\d{1,3}(?:\.\d+)?)\s*(%|/\s*10\b|/\s*100\b)?",
        text,
        re.IGNORECASE,
    )
    if not match:
        return None
    return _scaled(match.group(1), match.group(2))


def extract_verdict(text: str) -> InvestmentVerdict:
    """Build a final (never ``pending``) InvestmentVerdict from ``text``."""
    data = _json_section(find_json_object(text), "verdict")

    decision = _decision_from_value(_json_value(data, "decision", ("will invest", "willInvest")))
    if decision is None:
        decision = _decision_from_value(extract_field(text, ("decision", "final decision")))
    heuristic = decision is None
    if decision is None:
        decision = infer_decision(text)
        logger.debug("Decision inferred from prose: %s", decision.value)

    confidence = _parse_confidence(_json_value(data, "confidence", ("confidence level",)))
    if confidence is None:
        confidence = _confidence_from_text(text)
    if confidence is None:
        defaults = _HEURISTIC_CONFIDENCE if heuristic else _LABELLED_CONFIDENCE
        confidence = defaults[decision]

    reasoning = (
        _as_text(_json_value(data, "reasoning", ("rationale", "reason")))
        or extract_field(text, ("reasoning", "rationale"))
        or REASONING_PLACEHOLDER
    )

    lists: dict[str, list[str]] = {}
    for field_name, labels in _LIST_LABELS.items():
        lists[field_name] = (
            _as_list(_json_value(data, field_name, labels))
            or extract_list(text, labels)
            or _as_list(extract_field(text, labels))
            or list(LIST_PLACEHOLDERS[field_name])
        )

    return InvestmentVerdict(
        decision=decision,
        confidence=confidence,
        reasoning=reasoning,
        **lists,
    )


def _readiness_from_value(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    text = _as_text(value)
    if not text:
        return None
    lowered = text.lower()
    if "not ready" in lowered or lowered.startswith("no"):
        return False
    if "ready" in lowered or lowered.startswith("yes"):
        return True
    return None


def extract_readiness(text: str) -> ReadinessAssessment:
    """Read the assessor's ready / not ready verdict and optional reformulated idea."""
    data = find_json_object(text) or {}

    ready = _readiness_from_value(_json_value(data, "verdict", ("readiness", "ready")))
    if ready is None:
        lowered = text.lower()
        ready = "not ready" not in lowered and re.search(r"\bready\b", lowered) is not None

    reformulated = _as_text(_json_value(data, "reformulated_idea", ("reformulatedIdea", "reformulation")))
    if reformulated is None:
        match = re.search(
            r"reformulated idea\**\s*[:\-]?\s*\**\s*(.+?)(?:\n\s*\n|$)",
            text,
            re.IGNORECASE | re.DOTALL,
        )
        if match:
            reformulated = match.group(1).strip() or None

    return ReadinessAssessment(ready=ready, reformulated_idea=reformulated, raw=text)


def extract_final_pitch(decision_text: str, working_idea: str) -> StartupPitch:
    """Prefer the pitch written into the decision; otherwise read the refined working idea."""
    data = find_json_object(decision_text)
    if data and _json_section(data, "pitch") is not data:
        return extract_pitch(decision_text)
    return extract_pitch(working_idea)
