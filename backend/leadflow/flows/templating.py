# /leadflow/flows/templating.py

import re
from typing import Any, Dict, Optional

from leadflow.flows.conditions import lookup

# {{variable}} is the flow builder syntax; {variable} is what the message
# editors insert from the variable picker. Both resolve the same way.
_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}|\{([\w.]+)\}")


def render(template: Optional[str], context: Dict[str, Any], contact: Optional[Dict[str, Any]] = None) -> str:
    """Substitutes placeholders from the execution context and contact. Unknown names render empty."""
    if not template:
        return ""

    def _replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        value = lookup(name, context, contact)
        if value is None:
            return ""
        if isinstance(value, (list, tuple, set)):
            return ", ".join(str(v) for v in value)
        return str(value)

    return _PLACEHOLDER.sub(_replace, template)
