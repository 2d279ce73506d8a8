"""Rule-based segment filter.

Each rule is a regular expression with an action:
- ``remove``: drop the item
- ``keep``: keep the item and stop evaluating rules
- ``flag``: keep the item and record the rule name under ``metadata.flags``

A rule without an action removes what it matches. The first matching
rule decides; when none matches ``default_action`` (``keep`` or
``remove``) applies. Items with fewer than ``min_tokens`` whitespace-separated
tokens are dropped before any rule runs.
"""

from __future__ import annotations

import re
from typing import Any

from pyconveyor.steps.base import Item, Step, StepContext, StepResult, item_text

_ACTIONS = ("remove", "keep", "flag")


def _compile(rule: dict[str, Any], case_sensitive: bool) -> re.Pattern[str]:
    if not rule.get("pattern"):
        raise ValueError("pattern is required")
    flags = 0 if case_sensitive else re.IGNORECASE
    if "i" in rule.get("flags", ""):
        flags |= re.IGNORECASE
    if "m" in rule.get("flags", ""):
        flags |= re.MULTILINE
    return re.compile(rule["pattern"], flags)


def _prepare(
    index: int, rule: dict[str, Any], case_sensitive: bool
) -> tuple[str, str, re.Pattern[str]]:
    """Return ``(name, action, pattern)`` for one configured rule.

    Raises:
        ValueError: If the action is unknown, the pattern is missing or invalid
    """
    action = rule.get("action", "remove")
    if action not in _ACTIONS:
        raise ValueError(f"Rule {index}: action must be one of {', '.join(_ACTIONS)}")
    try:
        pattern = _compile(rule, case_sensitive)
    except re.error as e:
        raise ValueError(f"Rule {index}: invalid regex pattern - {e}") from e
    except ValueError as e:
        raise ValueError(f"Rule {index}: {e}") from e
    return rule.get("name") or rule.get("id") or f"rule-{index}", action, pattern


class RuleBasedFilterStep(Step):
    step_type = "rule_based_filter"
    name = "Rule-Based Filter"
    description = "Filter segments using configurable regex rules and a minimum token count"

    def validate(self, config: dict[str, Any]) -> list[str]:
        errors = []
        for index, rule in enumerate(config.get("rules", [])):
            try:
                _compile(rule, bool(config.get("case_sensitive", False)))
            except re.error as e:
                errors.append(f"Rule {index}: invalid regex pattern - {e}")
            except ValueError as e:
                errors.append(f"Rule {index}: {e}")
            if rule.get("action", "remove") not in _ACTIONS:
                errors.append(f"Rule {index}: action must be one of {', '.join(_ACTIONS)}")
        if config.get("default_action", "keep") not in ("keep", "remove"):
            errors.append("Default action must be one of: keep, remove")
        min_tokens = config.get("min_tokens", 0)
        if not isinstance(min_tokens, int) or min_tokens < 0:
            errors.append(f"min_tokens must be a non-negative integer, got {min_tokens!r}")
        return errors

    async def execute(self, items: list[Item], context: StepContext) -> StepResult:
        config = context.config
        field_name = config.get("content_field", "content")
        min_tokens = int(config.get("min_tokens", 0))
        default_action = config.get("default_action", "keep")
        case_sensitive = bool(config.get("case_sensitive", False))
        rules = [
            _prepare(index, rule, case_sensitive)
            for index, rule in enumerate(config.get("rules", []))
        ]

        kept: list[Item] = []
        removed_short = removed_by_rule = flagged = 0

        for item in items:
            text = item_text(item, field_name)
            if len(text.split()) < min_tokens:
                removed_short += 1
                continue

            action, matched = default_action, None
            for rule_name, rule_action, pattern in rules:
                if pattern.search(text):
                    action, matched = rule_action, rule_name
                    break

            if action == "remove":
                removed_by_rule += 1
                continue
            if action == "flag":
                metadata = dict(item.get("metadata") or {})
                metadata["flags"] = [*metadata.get("flags", []), matched]
                item = {**item, "metadata": metadata}
                flagged += 1
            kept.append(item)

        return StepResult(
            items=kept,
            metrics={
                "inputCount": len(items),
                "outputCount": len(kept),
                "removedShort": removed_short,
                "removedByRule": removed_by_rule,
                "flagged": flagged,
            },
        )
