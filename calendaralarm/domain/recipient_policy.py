"""Recipient policy gate.

A policy is a pure predicate over recipient addresses, evaluated after the
calculator decided an alarm is due. A deny turns into a delete of whatever
alarm the recipient holds, never a silent skip.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from calendaralarm.calendar.models import normalize_address

if TYPE_CHECKING:
    from calendaralarm.core.config import AlarmConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class RecipientPolicy(Protocol):
    """Decides whether a recipient may hold alarms."""

    def allows(self, address: str) -> bool: ...


class AllowAllRecipients:
    """Policy that lets every recipient through."""

    def allows(self, address: str) -> bool:
        return True

    def __repr__(self) -> str:
        return "AllowAllRecipients()"


class WhitelistRecipientPolicy:
    """Only explicitly listed addresses are allowed; an empty list allows nobody."""

    def __init__(self, addresses: Iterable[str]):
        self._addresses = frozenset(normalize_address(a) for a in addresses if a and a.strip())

    @property
    def addresses(self) -> frozenset[str]:
        return self._addresses

    def allows(self, address: str) -> bool:
        return normalize_address(address) in self._addresses

    def __repr__(self) -> str:
        return f"WhitelistRecipientPolicy({len(self._addresses)} addresses)"


class DomainRecipientPolicy:
    """Allows addresses whose mail domain is in the allowed set (case-insensitive)."""

    def __init__(self, domains: Iterable[str]):
        self._domains = frozenset(d.strip().lstrip("@").lower() for d in domains if d and d.strip())

    def allows(self, address: str) -> bool:
        normalized = normalize_address(address)
        _, at, domain = normalized.rpartition("@")
        return bool(at) and domain in self._domains

    def __repr__(self) -> str:
        return f"DomainRecipientPolicy({sorted(self._domains)})"


class AllOfPolicies:
    """Conjunction of policies."""

    def __init__(self, policies: Iterable[RecipientPolicy]):
        self.policies = list(policies)

    def allows(self, address: str) -> bool:
        return all(policy.allows(address) for policy in self.policies)

    def __repr__(self) -> str:
        return f"AllOfPolicies({self.policies!r})"


def build_recipient_policy(config: AlarmConfig | None) -> RecipientPolicy:
    """Build the policy described by the configuration.

    Empty ``recipient_whitelist`` and ``allowed_domains`` mean no restriction
    of that kind; when both are set a recipient must satisfy both.
    """
    if config is None:
        return AllowAllRecipients()

    policies: list[RecipientPolicy] = []
    if config.recipient_whitelist:
        policies.append(WhitelistRecipientPolicy(config.recipient_whitelist))
    if config.allowed_domains:
        policies.append(DomainRecipientPolicy(config.allowed_domains))

    if not policies:
        policy: RecipientPolicy = AllowAllRecipients()
    elif len(policies) == 1:
        policy = policies[0]
    else:
        policy = AllOfPolicies(policies)
    logger.debug("Recipient policy: %r", policy)
    return policy
