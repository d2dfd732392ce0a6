"""Legacy/structured protocol adapter, feature flags and rollback switches."""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import replace
from enum import Enum
from typing import Any

from pydantic import ValidationError

from chatcontext.audit import AuditEventType
from chatcontext.audit import AuditLogger
from chatcontext.config import FeatureFlags
from chatcontext.errors import RequestValidationError
from chatcontext.models.messages import content_text
from chatcontext.models.schemas import CURRENT_VERSION
from chatcontext.models.schemas import default_options
from chatcontext.models.schemas import LegacyAgent
from chatcontext.models.schemas import LegacyRequest
from chatcontext.models.schemas import LegacyResponse
from chatcontext.models.schemas import ProtocolVersion
from chatcontext.models.schemas import StructuredResponse
from chatcontext.protocol.validator import field_errors_from

logger = logging.getLogger(__name__)

# (option group, option key, flag that must be on for the option to stay on)
_FLAG_OVERRIDES: tuple[tuple[str, str, str], ...] = (
    ("memory", "enabled", "enable_memory"),
    ("state", "save_checkpoint", "enable_state_checkpoints"),
    ("response", "include_metrics", "enable_metrics"),
    ("response", "include_metadata", "enable_processing_details"),
    ("response", "stream", "enable_streaming"),
)


@dataclass(frozen=True)
class NormalizedRequest:
    """A request upgraded to the structured shape, ready for validation."""

    payload: dict[str, Any]
    protocol: ProtocolVersion
    flags: FeatureFlags
    request_id: str
    rollback: bool = False


def legacy_flags(flags: FeatureFlags) -> FeatureFlags:
    """Flag snapshot for the legacy-compatible path: no new behaviours."""
    return replace(
        flags,
        enable_memory=False,
        enable_state_checkpoints=False,
        enable_tool_calls=False,
        enable_streaming=False,
        rollback_active=True,
    )


class VersionAdapter:
    """Converts between the legacy and structured protocol shapes."""

    # ------------------------------------------------------------------
    # Detection / upgrade
    # ------------------------------------------------------------------

    def detect_version(self, raw: Any) -> ProtocolVersion:
        if not isinstance(raw, Mapping):
            return ProtocolVersion.structured
        if "version" in raw:
            return ProtocolVersion.structured
        if isinstance(raw.get("message"), str):
            return ProtocolVersion.legacy
        return ProtocolVersion.structured

    def to_structured(self, legacy: Mapping[str, Any]) -> dict[str, Any]:
        """Upgrade a flat legacy request, filling every option explicitly."""
        data = dict(legacy)
        if "agentId" not in data and "agent_id" in data:
            data["agentId"] = data.pop("agent_id")
        try:
            parsed = LegacyRequest.model_validate(data)
        except ValidationError as exc:
            raise RequestValidationError(field_errors_from(exc)) from exc

        return {
            "version": CURRENT_VERSION,
            "message": {
                "role": "user",
                "content": {"type": "text", "text": parsed.message},
            },
            "context": {
                "agent_id": parsed.agentId,
                "conversation_id": parsed.conversationId,
                "session_id": parsed.sessionId,
                "user_id": parsed.userId,
            },
            "options": default_options(),
        }

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize(self, raw: Any, flags: FeatureFlags) -> NormalizedRequest:
        """Rollback check, version detection, upgrade, then flag overrides.

        Rollback is evaluated before anything else: when active, every
        request takes the legacy-compatible path whatever version it
        declares.
        """
        request_id = self._request_id(raw)

        if flags.rollback_active:
            effective = legacy_flags(flags)
            if self.detect_version(raw) is ProtocolVersion.legacy:
                payload = self._upgrade(raw, request_id)
            elif isinstance(raw, Mapping):
                payload = copy.deepcopy(dict(raw))
                payload["options"] = default_options()
            else:
                payload = {}
            logger.warning(
                "rollback active; routing request_id=%s through legacy path",
                request_id,
            )
            payload["request_id"] = request_id
            return NormalizedRequest(
                payload=self.apply_flags(payload, effective),
                protocol=ProtocolVersion.legacy,
                flags=effective,
                request_id=request_id,
                rollback=True,
            )

        protocol = self.detect_version(raw)
        if protocol is ProtocolVersion.legacy:
            payload = self._upgrade(raw, request_id)
        elif isinstance(raw, Mapping):
            payload = copy.deepcopy(dict(raw))
        else:
            payload = {}
        if isinstance(raw, Mapping) or protocol is ProtocolVersion.legacy:
            payload["request_id"] = request_id
        return NormalizedRequest(
            payload=self.apply_flags(payload, flags),
            protocol=protocol,
            flags=flags,
            request_id=request_id,
        )

    def _upgrade(self, raw: Mapping[str, Any], request_id: str) -> dict[str, Any]:
        try:
            return self.to_structured(raw)
        except RequestValidationError as exc:
            exc.request_id = request_id
            raise

    @staticmethod
    def apply_flags(payload: dict[str, Any], flags: FeatureFlags) -> dict[str, Any]:
        """Force options off where a feature flag disables the behaviour."""
        options = payload.get("options")
        if not isinstance(options, dict):
            return payload
        for group, key, flag in _FLAG_OVERRIDES:
            if getattr(flags, flag):
                continue
            section = options.get(group)
            if isinstance(section, dict):
                section[key] = False
        return payload

    @staticmethod
    def _request_id(raw: Any) -> str:
        if isinstance(raw, Mapping):
            for key in ("request_id", "requestId"):
                value = raw.get(key)
                if isinstance(value, str) and value:
                    return value
        return f"req_{uuid.uuid4().hex}"

    # ------------------------------------------------------------------
    # Response rendering
    # ------------------------------------------------------------------

    def to_legacy_response(
        self,
        response: StructuredResponse,
        *,
        agent_id: str | None = None,
        agent_name: str | None = None,
        conversation_id: str | None = None,
        session_id: str | None = None,
    ) -> LegacyResponse:
        """Flatten a structured response into the old client shape."""
        if response.data is not None:
            text = content_text(response.data.message.content)
        elif response.error is not None:
            text = response.error.message
        else:
            text = ""
        return LegacyResponse(
            message=text,
            agent=LegacyAgent(id=agent_id, name=agent_name),
            conversationId=conversation_id,
            sessionId=session_id,
            metrics=response.metrics,
            processing_details=response.processing_details,
            error=response.error,
        )


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


class KillSwitch(str, Enum):
    """Named emergency switches, each disabling one subsystem."""

    disable_memory_system = "disable_memory_system"
    disable_state_management = "disable_state_management"
    disable_new_tools = "disable_new_tools"
    disable_metrics = "disable_metrics"
    emergency_rollback = "emergency_rollback"


_SWITCH_EFFECTS: dict[KillSwitch, dict[str, bool]] = {
    KillSwitch.disable_memory_system: {"enable_memory": False},
    KillSwitch.disable_state_management: {"enable_state_checkpoints": False},
    KillSwitch.disable_new_tools: {"enable_tool_calls": False},
    KillSwitch.disable_metrics: {
        "enable_metrics": False,
        "enable_processing_details": False,
    },
    KillSwitch.emergency_rollback: {"rollback_active": True},
}


class RollbackManager:
    """Derives immutable flag snapshots from a baseline plus active switches."""

    def __init__(
        self,
        baseline: FeatureFlags | None = None,
        *,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._baseline = baseline or FeatureFlags()
        self._audit = audit_logger
        self._active: set[KillSwitch] = set()
        self._flags = self._baseline

    @property
    def flags(self) -> FeatureFlags:
        return self._flags

    @property
    def active_switches(self) -> frozenset[KillSwitch]:
        return frozenset(self._active)

    async def activate(self, switch: KillSwitch, *, reason: str = "") -> FeatureFlags:
        self._active.add(switch)
        self._flags = self._compose()
        logger.warning("kill switch activated switch=%s reason=%s", switch.value, reason)
        if self._audit is not None:
            await self._audit.emit(
                AuditEventType.ROLLBACK_ACTIVATED,
                switch=switch.value,
                reason=reason,
            )
        return self._flags

    def deactivate(self, switch: KillSwitch) -> FeatureFlags:
        self._active.discard(switch)
        self._flags = self._compose()
        logger.info("kill switch deactivated switch=%s", switch.value)
        return self._flags

    def _compose(self) -> FeatureFlags:
        overrides: dict[str, bool] = {}
        for switch in sorted(self._active, key=lambda s: s.value):
            overrides.update(_SWITCH_EFFECTS[switch])
        return replace(self._baseline, **overrides)
