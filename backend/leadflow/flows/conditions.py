# /leadflow/flows/conditions.py

"""
Predicate evaluation for condition nodes.

Everything here is pure: the same context and contact always give the same
answer, so re-evaluating a condition after a crash picks the same branch.
Randomizer draws are seeded from the execution, not from global state.
"""

import random
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from leadflow.models.flow import ConditionOperator, Predicate, RandomBranch

# Variable picker names (pt-BR) and their English aliases, read from the contact
CONTACT_FIELDS = {
    "contact_name": "name",
    "name": "name",
    "nome": "name",
    "phone": "phone",
    "telefone": "phone",
    "email": "email",
    "empresa": "company",
    "data_criacao": "created_at",
}


def lookup(path: str, context: Dict[str, Any], contact: Optional[Dict[str, Any]] = None) -> Any:
    """
    Resolves a condition field or template variable.

    ``contact.<attr>`` and the contact shortcuts (contact_name, tag/tags,
    phone) read the contact; anything else is a dotted path into the
    execution context.
    """
    contact = contact or {}
    if path in ("tag", "tags"):
        return contact.get("tags") or []
    if path in CONTACT_FIELDS:
        if path in context:
            return context[path]
        value = contact.get(CONTACT_FIELDS[path])
        if isinstance(value, datetime):
            return value.strftime("%d/%m/%Y")
        return value
    if path == "primeiro_nome" and path not in context:
        return (contact.get("name") or "").split(" ")[0]
    if path == "ultima_mensagem":
        path = "last_message"
    if path.startswith("contact."):
        return _dig(contact, path[len("contact."):].split("."))
    return _dig(context, path.split("."))


def _dig(data: Any, parts: List[str]) -> Any:
    for part in parts:
        if isinstance(data, dict):
            data = data.get(part)
        else:
            return None
    return data


def _norm(value: Any) -> str:
    return str(value).strip().lower() if value is not None else ""


def _number(value: Any) -> Optional[float]:
    try:
        return float(str(value).strip().replace(",", "."))
    except (TypeError, ValueError):
        return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return _norm(value) == ""


def _compare_text(actual: str, operator: ConditionOperator, expected: str) -> bool:
    if operator == ConditionOperator.EQUALS:
        return actual == expected
    if operator == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if operator == ConditionOperator.CONTAINS:
        return expected in actual
    if operator == ConditionOperator.NOT_CONTAINS:
        return expected not in actual
    if operator == ConditionOperator.STARTS_WITH:
        return actual.startswith(expected)
    if operator == ConditionOperator.ENDS_WITH:
        return actual.endswith(expected)
    return False


def evaluate_predicate(predicate: Predicate, context: Dict[str, Any], contact: Optional[Dict[str, Any]] = None) -> bool:
    actual = lookup(predicate.field, context, contact)
    operator = ConditionOperator(predicate.operator)

    if operator == ConditionOperator.IS_EMPTY:
        return _is_empty(actual)
    if operator == ConditionOperator.IS_NOT_EMPTY:
        return not _is_empty(actual)

    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left, right = _number(actual), _number(predicate.value)
        if left is None or right is None:
            return False
        return left > right if operator == ConditionOperator.GREATER_THAN else left < right

    expected = _norm(predicate.value)

    # List-valued fields (tags): membership for equality, any-element for text operators
    if isinstance(actual, (list, tuple, set)):
        items = [_norm(item) for item in actual]
        if operator == ConditionOperator.EQUALS:
            return expected in items
        if operator == ConditionOperator.NOT_EQUALS:
            return expected not in items
        if operator == ConditionOperator.NOT_CONTAINS:
            return not any(expected in item for item in items)
        return any(_compare_text(item, operator, expected) for item in items)

    return _compare_text(_norm(actual), operator, expected)


def evaluate_conditions(predicates: Sequence[Predicate], context: Dict[str, Any], contact: Optional[Dict[str, Any]] = None) -> bool:
    """True when any predicate matches. An empty list never matches."""
    return any(evaluate_predicate(p, context, contact) for p in predicates)


def pick_branch(branches: Sequence[RandomBranch], seed: str) -> str:
    """Weighted draw over ``branches`` that is stable for a given seed."""
    if not branches:
        raise ValueError("Randomizer has no branches to choose from")
    rng = random.Random(seed)
    weights = [b.weight for b in branches]
    if sum(weights) <= 0:
        weights = [1.0] * len(branches)
    return rng.choices([b.handle for b in branches], weights=weights, k=1)[0]


def randomizer_seed(execution_id: str, node_id: str, step_count: int) -> str:
    return f"{execution_id}:{node_id}:{step_count}"
