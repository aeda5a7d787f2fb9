"""
One-way migration of deprecated verification outcome values.

Cases recorded by older releases can carry outcome labels that no longer
exist. They are rewritten to their current equivalent and an audit note is
appended to the case notes. Migrated values never match the table again,
so running the migration twice changes nothing.
"""

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from caseflow.models import Case, VerificationOutcome

logger = logging.getLogger(__name__)

OUTCOME_MIGRATION_MAP: Dict[str, VerificationOutcome] = {
    'Positive': VerificationOutcome.POSITIVE_AND_DOOR_LOCKED,
    # closest current equivalent
    'Negative': VerificationOutcome.NSP_AND_DOOR_LOCKED,
    'Shifted': VerificationOutcome.SHIFTED_AND_DOOR_LOCKED,
    'Door Locked & Shifted': VerificationOutcome.SHIFTED_AND_DOOR_LOCKED,
    'DoorLockedAndShifted': VerificationOutcome.SHIFTED_AND_DOOR_LOCKED,
}


def migration_note(old: str, new: str) -> str:
    return f'[MIGRATED] Verification outcome changed from "{old}" to "{new}"'


def migrate_case(case: Case) -> Case:
    """Return `case` with a deprecated outcome replaced, or `case` itself."""
    current = case.verification_outcome
    target = OUTCOME_MIGRATION_MAP.get(current) if current else None
    if target is None:
        return case

    logger.info(f"Migrating case {case.id}: {current} -> {target.value}")
    note = migration_note(current, target.value)
    notes = f"{case.notes}\n\n{note}" if case.notes else note
    return replace(case, verification_outcome=target.value, notes=notes)


def migrate_cases(cases: List[Case]) -> Tuple[List[Case], bool]:
    """Migrate a collection; the flag tells whether anything changed."""
    migrated = [migrate_case(case) for case in cases]
    changed = any(new is not old for new, old in zip(migrated, cases))
    return migrated, changed


def is_deprecated_outcome(outcome: Optional[str]) -> bool:
    return bool(outcome) and outcome in OUTCOME_MIGRATION_MAP


def get_migration_target(outcome: str) -> Optional[VerificationOutcome]:
    return OUTCOME_MIGRATION_MAP.get(outcome)


def get_deprecated_outcomes() -> List[str]:
    return list(OUTCOME_MIGRATION_MAP)


def is_valid_verification_outcome(outcome: Optional[str]) -> bool:
    """True only for current outcome values."""
    if not outcome:
        return False
    return outcome in {member.value for member in VerificationOutcome}
