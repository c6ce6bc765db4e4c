import re

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_NON_DIGIT_RE = re.compile(r"\D")


def strip_json_fence(raw: str) -> str:
    """Return raw text with optional ```json fences removed."""
    text = (raw or "").strip()
    match = _JSON_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def digits_only(phone: str) -> str:
    """Strip all non-digit characters from a phone string."""
    return _NON_DIGIT_RE.sub("", phone or "")


def normalize_name(name: str) -> str:
    """Lowercase, drop non-letters and collapse whitespace."""
    cleaned = re.sub(r"[^a-z\s]", "", (name or "").lower())
    return re.sub(r"\s+", " ", cleaned).strip()


def to_safe_int(value, default: int = 0) -> int:
    """
    Coerce a model-supplied number ("7", 7.6, "12 years") to an int.
    Returns ``default`` when nothing numeric can be read.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(round(value))
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value)
        if match:
            return int(round(float(match.group(0))))
    return default
