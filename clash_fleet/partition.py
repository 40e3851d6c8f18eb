from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

from .config import GROUP_NAME, HEALTH_CHECK_INTERVAL, HEALTH_CHECK_URL
from .errors import EmptySelectionError
from .schema import ProxyDescriptor
from .types import ProxyGroup

LOGGER = logging.getLogger("ClashFleet.Partition")

TERMINAL_ACTIONS = frozenset({"DIRECT", "REJECT"})


def select_proxies(
    proxies: Sequence[ProxyDescriptor], prefix: str
) -> List[ProxyDescriptor]:
    """Return proxies whose name starts with `prefix`, in their original order."""

    selected = [proxy for proxy in proxies if proxy.name.startswith(prefix)]
    if not selected:
        raise EmptySelectionError(prefix)
    LOGGER.info(
        "Selected %s of %s proxies matching prefix %r: %s",
        len(selected),
        len(proxies),
        prefix,
        [proxy.name for proxy in selected],
    )
    return selected


def derive_groups(
    selected: Iterable[ProxyDescriptor], group_name: str = GROUP_NAME
) -> List[ProxyGroup]:
    """Build one single-member fallback group per selected proxy."""

    return [
        ProxyGroup(
            name=group_name,
            url=HEALTH_CHECK_URL,
            interval=HEALTH_CHECK_INTERVAL,
            proxies=(proxy.name,),
        )
        for proxy in selected
    ]


def is_terminal_rule(rule: str) -> bool:
    action = rule.rsplit(",", 1)[-1]
    return action.upper() in TERMINAL_ACTIONS


def rewrite_rule(rule: str, group_name: str) -> str:
    if is_terminal_rule(rule):
        return rule
    head, sep, _ = rule.rpartition(",")
    return f"{head}{sep}{group_name}"


def rewrite_rules(rules: Sequence[str], group_name: str = GROUP_NAME) -> List[str]:
    """Point every non-terminal rule at `group_name`; terminal rules pass through."""

    rewritten = [rewrite_rule(rule, group_name) for rule in rules]
    changed = sum(1 for old, new in zip(rules, rewritten) if old != new)
    LOGGER.debug("Retargeted %s of %s rules to group '%s'", changed, len(rules), group_name)
    return rewritten
