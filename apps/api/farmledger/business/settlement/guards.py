from __future__ import annotations

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from farmledger.business.settlement.models import Settlement, SettlementLine, ShareRule, ShareRuleLine
from farmledger.business.settlement.share_rules import ShareRuleService
from farmledger.platform.ledger.errors import ImmutabilityViolation
from farmledger.platform.ledger.guards import register_flush_check


_REVERSAL_FIELDS = {"status", "reversal_posting_group_id", "reversed_at", "reversed_by", "updated_at"}


def _committed_status(settlement: Settlement) -> str | None:
    history = inspect(settlement).attrs.status.history
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return None


def _changed_fields(obj: object) -> set[str]:
    return {attr.key for attr in inspect(obj).attrs if attr.history.has_changes()}


def _settlement_is_frozen(session: Session, settlement_id: object) -> bool:
    settlement = session.get(Settlement, settlement_id)
    return settlement is not None and _committed_status(settlement) in ("POSTED", "REVERSED")


def _check_settlement(settlement: Settlement) -> None:
    status = _committed_status(settlement)
    if status == "REVERSED":
        raise ImmutabilityViolation(f"settlement {settlement.settlement_no} is reversed and cannot change")
    if status == "POSTED":
        changed = _changed_fields(settlement) - {"lines", "offsets"}
        if not changed <= _REVERSAL_FIELDS or settlement.status != "REVERSED":
            raise ImmutabilityViolation(f"settlement {settlement.settlement_no} is posted and can only be reversed")


def _rule_is_referenced(session: Session, share_rule_id: object) -> bool:
    return ShareRuleService.is_referenced_by_posted_settlement(session, share_rule_id)


def check_settlement_immutability(session: Session) -> None:
    for obj in session.dirty:
        if isinstance(obj, Settlement) and session.is_modified(obj):
            _check_settlement(obj)
        elif isinstance(obj, SettlementLine) and session.is_modified(obj):
            if _settlement_is_frozen(session, obj.settlement_id):
                raise ImmutabilityViolation("lines of a posted settlement cannot change")
        elif isinstance(obj, (ShareRule, ShareRuleLine)) and session.is_modified(obj):
            rule_id = obj.id if isinstance(obj, ShareRule) else obj.share_rule_id
            if _rule_is_referenced(session, rule_id):
                raise ImmutabilityViolation("share rule is referenced by a posted settlement")

    for obj in session.deleted:
        if isinstance(obj, Settlement) and _committed_status(obj) != "DRAFT":
            raise ImmutabilityViolation(f"settlement {obj.settlement_no} cannot be deleted once posted")
        if isinstance(obj, SettlementLine) and _settlement_is_frozen(session, obj.settlement_id):
            raise ImmutabilityViolation("lines of a posted settlement cannot be deleted")
        if isinstance(obj, ShareRule) and _rule_is_referenced(session, obj.id):
            raise ImmutabilityViolation("share rule is referenced by a posted settlement")
        if isinstance(obj, ShareRuleLine) and _rule_is_referenced(session, obj.share_rule_id):
            raise ImmutabilityViolation("share rule is referenced by a posted settlement")

    for obj in session.new:
        if isinstance(obj, SettlementLine) and obj.settlement_id is not None and _settlement_is_frozen(session, obj.settlement_id):
            raise ImmutabilityViolation("lines cannot be added to a posted settlement")
        if isinstance(obj, ShareRuleLine) and obj.share_rule_id is not None and _rule_is_referenced(session, obj.share_rule_id):
            raise ImmutabilityViolation("share rule is referenced by a posted settlement")


register_flush_check(check_settlement_immutability)
