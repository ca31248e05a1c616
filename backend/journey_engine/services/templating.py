import re
from typing import Any, Mapping, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def render_template(text: Optional[str], contact: Optional[Mapping[str, Any]], context: Optional[Mapping[str, Any]] = None) -> str:
    """
    Substitute ``{{field}}`` tokens from the contact record overlaid by the
    enrollment context. Tokens without a value are left as they are.
    """
    if not text:
        return ""
    data = {**(contact or {}), **(context or {})}

    def substitute(match):
        value = data.get(match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return PLACEHOLDER_PATTERN.sub(substitute, text)
