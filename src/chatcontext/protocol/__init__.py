"""Protocol domain: version adaptation, rollback and request validation."""

from chatcontext.protocol.adapter import KillSwitch
from chatcontext.protocol.adapter import legacy_flags
from chatcontext.protocol.adapter import NormalizedRequest
from chatcontext.protocol.adapter import RollbackManager
from chatcontext.protocol.adapter import VersionAdapter
from chatcontext.protocol.validator import field_errors_from
from chatcontext.protocol.validator import SchemaValidator
from chatcontext.protocol.validator import ValidationResult

__all__ = [
    "KillSwitch",
    "NormalizedRequest",
    "RollbackManager",
    "SchemaValidator",
    "ValidationResult",
    "VersionAdapter",
    "field_errors_from",
    "legacy_flags",
]
