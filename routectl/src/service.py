from __future__ import annotations

import logging

from routectl.src.controller import RouteController
from routectl.src.errors import ErrorKind, RouteControllingError
from routectl.src.models import RouteRule, RouteRuleId


def _name_matches(rule: RouteRule, name: str | None, exact: bool) -> bool:
    if exact:
        return rule.name == name
    return name is None or name in rule.name


class RouteRuleService:
    """Rule-level operations built on the controller's whole-set operations.

    Each call reads the current rule set and, for writes, stores the modified
    set back.  The two steps take the service lock separately, so a
    concurrent writer between them is not detected; the last write wins.
    """

    def __init__(self, controller: RouteController, logger: logging.Logger | None = None) -> None:
        self.controller = controller
        self.logger = logger or logging.getLogger(__name__)

    def find_rules(self, rule_id: RouteRuleId, exact: bool = False) -> list[RouteRule]:
        """Return rules whose name equals (``exact``) or contains ``rule_id.name``."""
        rules = self.controller.get_all(rule_id.service_ref)
        if rules is None:
            return []
        return [rule for rule in rules if _name_matches(rule, rule_id.name, exact)]

    def add_rule(self, rule: RouteRule, allow_overwrite: bool = False) -> None:
        """Store *rule*, replacing a same-named rule only if ``allow_overwrite``."""
        service_ref = rule.service_ref
        existing = self.controller.get_all(service_ref)
        if existing is None:
            self.controller.create_all(service_ref, [rule])
            self.logger.info("Created first rule %r for %s", rule.name, service_ref)
            return

        if any(current.name == rule.name for current in existing) and not allow_overwrite:
            raise RouteControllingError(
                f"Rule {rule.name!r} already exists for {service_ref}",
                ErrorKind.BAD_RESOURCE,
            )

        kept = [current for current in existing if current.name != rule.name]
        self.controller.update_all(service_ref, [*kept, rule])
        self.logger.info("Stored rule %r for %s", rule.name, service_ref)

    def delete_rules(self, rule_id: RouteRuleId, exact: bool = True) -> list[RouteRule]:
        """Delete matching rules and return them.

        Removing the last rule deletes the resource pair.  Raises
        ``RESOURCE_NOT_FOUND`` when the service has no policy or nothing
        matches.
        """
        service_ref = rule_id.service_ref
        existing = self.controller.get_all(service_ref)
        if existing is None:
            raise RouteControllingError(
                f"No route rules exist for {service_ref}", ErrorKind.RESOURCE_NOT_FOUND
            )

        removed = [rule for rule in existing if _name_matches(rule, rule_id.name, exact)]
        if not removed:
            raise RouteControllingError(
                f"No route rule matching {rule_id.name!r} exists for {service_ref}",
                ErrorKind.RESOURCE_NOT_FOUND,
            )

        kept = [rule for rule in existing if rule not in removed]
        self.controller.update_all(service_ref, kept)
        self.logger.info(
            "Deleted %d rule(s) matching %r for %s", len(removed), rule_id.name, service_ref
        )
        return removed
