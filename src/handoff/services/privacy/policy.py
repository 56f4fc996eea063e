from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit

from src.handoff.config import settings

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}
_REMOTE_BACKENDS = {"llm"}


class PrivacyProfile(str, Enum):
    STRICT = "strict"
    STANDARD = "standard"


class ExecutionMode(str, Enum):
    LOCAL_ONLY = "local_only"
    HYBRID_OPT_IN = "hybrid_opt_in"


@dataclass
class PolicyDecision:
    allowed: bool
    reason: Optional[str] = None


def is_cross_origin(url: str, origin: Optional[str] = None) -> bool:
    """Relative locations are same-origin; absolute ones must match ``origin``."""

    value = (url or "").strip()
    if not value:
        return False
    if "://" not in value and not value.startswith("//"):
        return False
    parts = urlsplit(value)
    if not parts.netloc:
        return False
    if origin is None:
        return True
    base = urlsplit(origin)
    return (parts.scheme or base.scheme, parts.netloc.lower()) != (base.scheme, base.netloc.lower())


def is_secure_location(url: str) -> bool:
    value = (url or "").strip()
    if not value or "://" not in value:
        return True
    parts = urlsplit(value)
    if parts.scheme == "https":
        return True
    return parts.scheme == "http" and (parts.hostname or "") in _LOCAL_HOSTS


@dataclass
class PrivacyPolicy:
    profile: PrivacyProfile = PrivacyProfile.STRICT
    execution_mode: ExecutionMode = ExecutionMode.LOCAL_ONLY
    origin: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "PrivacyPolicy":
        try:
            profile = PrivacyProfile(settings.privacy_profile.lower())
        except ValueError:
            profile = PrivacyProfile.STRICT
        try:
            mode = ExecutionMode(settings.execution_mode.lower())
        except ValueError:
            mode = ExecutionMode.LOCAL_ONLY
        return cls(profile=profile, execution_mode=mode)

    @property
    def same_origin_required(self) -> bool:
        return self.profile == PrivacyProfile.STRICT or self.execution_mode == ExecutionMode.LOCAL_ONLY

    @property
    def remote_sync_allowed(self) -> bool:
        return self.execution_mode != ExecutionMode.LOCAL_ONLY

    def check_refine_adapter(self, adapter_url: Optional[str], backend: str = "heuristic") -> PolicyDecision:
        """Decide whether a refinement adapter may be invoked at all."""

        if backend in _REMOTE_BACKENDS and not self.remote_sync_allowed:
            return PolicyDecision(False, f"remote refine backend {backend} blocked by local_only mode")
        if not self.same_origin_required or not adapter_url:
            return PolicyDecision(True)
        if is_cross_origin(adapter_url, self.origin):
            return PolicyDecision(False, f"cross-origin refine adapter blocked by {self.profile.value} profile")
        if not is_secure_location(adapter_url):
            return PolicyDecision(False, "insecure refine adapter location blocked")
        return PolicyDecision(True)
