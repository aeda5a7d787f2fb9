"""
Closed set of case mutations.

Form collaborators change cases through SetField and ReplaceReport rather
than arbitrary partial dicts. Each command is validated before it touches a
case, so engine-owned bookkeeping (submission state, timestamps, id) can
only be changed by the synchronization engine itself.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple, Union

from caseflow.exceptions import ValidationError, ErrorCode
from caseflow.models import Case, CaseStatus, VerificationOutcome

# Written by the engine only
ENGINE_OWNED_FIELDS = frozenset([
    'id',
    'submissionStatus',
    'submissionError',
    'lastSubmissionAttempt',
    'createdAt',
    'updatedAt',
])

_REPORT_VARIANTS = {
    'Residence': ('', 'shifted', 'nsp', 'entryRestricted', 'untraceable'),
    'ResiCumOffice': ('', 'shifted', 'nsp', 'entryRestricted', 'untraceable'),
    'Office': ('positive', 'shifted', 'nsp', 'entryRestricted', 'untraceable'),
    'Business': ('positive', 'shifted', 'nsp', 'entryRestricted', 'untraceable'),
    'Builder': ('positive', 'shifted', 'nsp', 'entryRestricted', 'untraceable'),
    'Noc': ('positive', 'shifted', 'nsp', 'entryRestricted', 'untraceable'),
    'Dsa': ('positive', 'shifted', 'nsp', 'entryRestricted', 'untraceable'),
    'PropertyApf': ('positive', 'nsp', 'entryRestricted', 'untraceable'),
    'PropertyIndividual': ('positive', 'nsp', 'entryRestricted', 'untraceable'),
}


def _report_key(variant: str, kind: str) -> str:
    if not variant:
        # The positive residence reports predate the variant prefix
        return f"{kind[0].lower()}{kind[1:]}Report"
    return f"{variant}{kind}Report"


REPORT_KEYS = frozenset(
    _report_key(variant, kind)
    for kind, variants in _REPORT_VARIANTS.items()
    for variant in variants
)


@dataclass(frozen=True)
class SetField:
    """Set one top-level case field."""
    name: str
    value: Any

    def validate(self) -> None:
        if not self.name:
            raise ValidationError("Field name cannot be empty")
        if self.name in ENGINE_OWNED_FIELDS:
            raise ValidationError(
                f"Field '{self.name}' is managed by the sync engine",
                field_name=self.name,
                error_code=ErrorCode.VALIDATION_FIELD_NOT_WRITABLE
            )
        if self.name in REPORT_KEYS:
            raise ValidationError(
                f"Use ReplaceReport to change '{self.name}'",
                field_name=self.name
            )

        validator = _FIELD_VALIDATORS.get(self.name)
        if validator is not None:
            validator(self.name, self.value)

    def to_patch(self) -> Dict[str, Any]:
        value = self.value.value if isinstance(self.value, (CaseStatus, VerificationOutcome)) else self.value
        return {self.name: value}


@dataclass(frozen=True)
class ReplaceReport:
    """Replace a whole verification report payload."""
    report_id: str
    data: Mapping[str, Any]

    def validate(self) -> None:
        if self.report_id not in REPORT_KEYS:
            raise ValidationError(
                f"Unknown report '{self.report_id}'",
                field_name=self.report_id,
                error_code=ErrorCode.VALIDATION_UNKNOWN_REPORT
            )
        if not isinstance(self.data, Mapping):
            raise ValidationError(
                f"Report '{self.report_id}' must be an object",
                field_name=self.report_id
            )

    def to_patch(self) -> Dict[str, Any]:
        return {self.report_id: dict(self.data)}


CaseCommand = Union[SetField, ReplaceReport]


def _check_status(name: str, value: Any) -> None:
    allowed = {member.value for member in CaseStatus}
    raw = value.value if isinstance(value, CaseStatus) else value
    if raw not in allowed:
        raise ValidationError(f"Invalid status: {value!r}", field_name=name)


def _check_bool(name: str, value: Any) -> None:
    if not isinstance(value, bool):
        raise ValidationError(f"'{name}' must be true or false", field_name=name)


def _check_priority(name: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError("Priority must be a positive whole number", field_name=name)


def _check_outcome(name: str, value: Any) -> None:
    if value is None:
        return
    raw = value.value if isinstance(value, VerificationOutcome) else value
    if raw not in {member.value for member in VerificationOutcome}:
        raise ValidationError(f"Invalid verification outcome: {value!r}", field_name=name)


def _check_optional_str(name: str, value: Any) -> None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"'{name}' must be text", field_name=name)


_FIELD_VALIDATORS = {
    'status': _check_status,
    'isSaved': _check_bool,
    'priority': _check_priority,
    'verificationOutcome': _check_outcome,
    'notes': _check_optional_str,
    'inProgressAt': _check_optional_str,
    'savedAt': _check_optional_str,
    'completedAt': _check_optional_str,
}


def to_commands(changes: Union[Mapping[str, Any], Sequence[CaseCommand]]) -> List[CaseCommand]:
    """
    Normalise caller input to a validated command list.

    A mapping becomes one command per key: report keys turn into
    ReplaceReport, everything else into SetField.
    """
    if isinstance(changes, Mapping):
        commands: List[CaseCommand] = [
            ReplaceReport(key, value) if key in REPORT_KEYS else SetField(key, value)
            for key, value in changes.items()
        ]
    else:
        commands = list(changes)

    if not commands:
        raise ValidationError("No changes given")

    for command in commands:
        if not isinstance(command, (SetField, ReplaceReport)):
            raise ValidationError(f"Unsupported case command: {type(command).__name__}")
        command.validate()

    return commands


def build_patch(commands: Iterable[CaseCommand]) -> Dict[str, Any]:
    patch: Dict[str, Any] = {}
    for command in commands:
        patch.update(command.to_patch())
    return patch


def apply_commands(case: Case, commands: Iterable[CaseCommand]) -> Tuple[Case, Dict[str, Any]]:
    """Apply already-validated commands; returns the new case and the patch."""
    patch = build_patch(commands)
    return case.merged(patch), patch
