"""Response Normalizer — recovers structured data from model output.

Models asked for JSON frequently wrap it in markdown fences, add
explanatory prose or leave trailing commas. The repair pipeline:
  1. Strip fenced code-block delimiters (any language tag)
  2. Keep the span from the first ``{``/``[`` to the last ``}``/``]``
  3. Drop trailing commas before ``}`` / ``]``
  4. Strict parse; on failure quote bare identifier keys and parse again
  5. Still invalid → ParseError carrying the raw text

Substitutions never touch the contents of string literals, so every step
is a no-op on valid JSON and the pipeline is idempotent.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from crm_ai.gateway.errors import ParseError

logger = logging.getLogger(__name__)

# Group 1 of every pattern matches a whole double-quoted string literal,
# which is put back as-is.
_STRING = r'("(?:\\.|[^"\\])*")'
_FENCE = re.compile(_STRING + r"|```[a-zA-Z0-9_+-]*[ \t]*\n?|\n?```")
_TRAILING_COMMA = re.compile(_STRING + r"|,\s*([}\]])")
_BARE_KEY = re.compile(_STRING + r"|([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")


def _sub_outside_strings(pattern: re.Pattern, template: str, text: str) -> str:
    def replace(match: re.Match) -> str:
        if match.group(1) is not None:
            return match.group(1)
        return match.expand(template)

    return pattern.sub(replace, text)


def _strip_fences(text: str) -> str:
    return _sub_outside_strings(_FENCE, "", text).strip()


def _json_span(text: str) -> str:
    """Cut away prose before the first opening and after the last closing bracket."""
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    end = max(text.rfind("}"), text.rfind("]"))
    if not starts or end == -1:
        return text
    start = min(starts)
    if end <= start:
        return text
    return text[start : end + 1]


def _remove_trailing_commas(text: str) -> str:
    return _sub_outside_strings(_TRAILING_COMMA, r"\2", text)


def _quote_bare_keys(text: str) -> str:
    return _sub_outside_strings(_BARE_KEY, r'\2"\3":', text)


def repair_json(text: str) -> str:
    """Apply the cleanup steps and return the candidate JSON text (not yet validated)."""
    clean = _strip_fences(text or "")
    clean = _json_span(clean)
    return _remove_trailing_commas(clean)


def parse_json(text: str) -> Any:
    """Repair and parse model output. Raises ParseError if it cannot be recovered."""
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        pass

    clean = repair_json(text)
    try:
        return json.loads(clean)
    except json.JSONDecodeError as first_error:
        try:
            return json.loads(_quote_bare_keys(clean))
        except json.JSONDecodeError:
            logger.debug("Unrecoverable model output: %.500s", text)
            raise ParseError(f"AI returned invalid JSON: {first_error}", raw_text=text) from first_error


def normalize_text(text: str | None) -> str:
    """Free-text passthrough: text is returned unchanged, None becomes ""."""
    return text or ""
