"""
Label selector helpers
"""
from typing import Dict, Optional

from rightsizer.core.exceptions import SelectorError
from rightsizer.models.resource_models import LabelSelector

_OPERATORS = {"In", "NotIn", "Exists", "DoesNotExist"}


def validate_selector(selector: LabelSelector) -> None:
    """Raise SelectorError if the selector is malformed"""
    for requirement in selector.match_expressions:
        if requirement.operator not in _OPERATORS:
            raise SelectorError(
                f"invalid label selector operator {requirement.operator!r} for key {requirement.key!r}"
            )
        if requirement.operator in ("In", "NotIn") and not requirement.values:
            raise SelectorError(
                f"operator {requirement.operator} on key {requirement.key!r} requires at least one value"
            )
        if requirement.operator in ("Exists", "DoesNotExist") and requirement.values:
            raise SelectorError(
                f"operator {requirement.operator} on key {requirement.key!r} takes no values"
            )


def selector_to_string(selector: Optional[LabelSelector]) -> Optional[str]:
    """Convert a LabelSelector to the string form accepted by list calls"""
    if selector is None:
        return None
    validate_selector(selector)

    parts = [f"{key}={value}" for key, value in sorted(selector.match_labels.items())]
    for requirement in selector.match_expressions:
        if requirement.operator == "In":
            parts.append(f"{requirement.key} in ({','.join(requirement.values)})")
        elif requirement.operator == "NotIn":
            parts.append(f"{requirement.key} notin ({','.join(requirement.values)})")
        elif requirement.operator == "Exists":
            parts.append(requirement.key)
        else:
            parts.append(f"!{requirement.key}")

    return ",".join(parts) or None


def selector_matches(selector: Optional[LabelSelector], labels: Optional[Dict[str, str]]) -> bool:
    """Evaluate a LabelSelector against a label set; an absent selector matches everything"""
    if selector is None:
        return True
    validate_selector(selector)
    labels = labels or {}

    for key, value in selector.match_labels.items():
        if labels.get(key) != value:
            return False

    for requirement in selector.match_expressions:
        present = requirement.key in labels
        if requirement.operator == "In":
            if not present or labels[requirement.key] not in requirement.values:
                return False
        elif requirement.operator == "NotIn":
            if present and labels[requirement.key] in requirement.values:
                return False
        elif requirement.operator == "Exists":
            if not present:
                return False
        elif present:
            return False

    return True
