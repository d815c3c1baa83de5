import re
from typing import Mapping

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")

# A field starts on a line like "STATUS: done" or a bare "FINDINGS:".
_FIELD_START = re.compile(r"^([A-Z_]+):(?:\s+(.*))?$")

STORIES_FIELD = "stories_json"


def _lookup(key: str, context: Mapping[str, str]):
    if key in context:
        return context[key]

    lower = key.lower()
    if lower in context:
        return context[lower]

    for k, v in context.items():
        if k.lower() == lower:
            return v

    return None


def resolve_template(template: str, context: Mapping[str, str]) -> str:
    """Substitute {{key}} placeholders; unknown keys render as [missing: key]."""

    def _replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        value = _lookup(key, context)
        if value is None:
            return f"[missing: {key}]"
        return str(value)

    return _PLACEHOLDER.sub(_replace, template or "")


def parse_output_fields(output: str) -> dict[str, str]:
    """Parse KEY: value fields out of worker output.

    Lines that do not start a new field are appended to the current field,
    so values may span several lines. Keys are lower-cased and values trimmed.
    Text before the first field is ignored.
    """
    fields: dict[str, str] = {}
    current_key = None
    current_lines: list[str] = []

    def _flush() -> None:
        if current_key is not None:
            fields[current_key] = "\n".join(current_lines).strip()

    for line in (output or "").splitlines():
        match = _FIELD_START.match(line)
        if match:
            _flush()
            current_key = match.group(1).lower()
            first = match.group(2)
            current_lines = [first] if first else []
            continue

        if current_key is not None:
            current_lines.append(line)

    _flush()
    return fields


def parse_output_key_values(output: str) -> dict[str, str]:
    """Fields that merge into the run context (STORIES_JSON is reserved)."""
    fields = parse_output_fields(output)
    fields.pop(STORIES_FIELD, None)
    return fields
