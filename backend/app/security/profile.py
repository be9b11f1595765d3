# backend/app/security/profile.py
"""
Per-user MFA metadata.

The identity provider stores one metadata blob per user:

    {
        "ollypass_secret": "JBSWY3DPEHPK3PXP...",   # or null
        "trusted_devices": {"<fingerprint>": "2024-03-01T18:00:00+00:00"}
    }

The engine never owns that storage. It receives an ``MfaProfile`` built
from the blob, mutates a copy, and hands back the updated blob.
"""
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from backend.app.core.clock import ensure_aware

logger = logging.getLogger(__name__)

SECRET_KEY = "ollypass_secret"
TRUSTED_DEVICES_KEY = "trusted_devices"


@dataclass
class MfaProfile:
    identity: str
    secret: Optional[str] = None
    trusted_devices: Dict[str, datetime] = field(default_factory=dict)

    @property
    def enrolled(self) -> bool:
        return bool(self.secret)

    def copy(self) -> "MfaProfile":
        return copy.deepcopy(self)

    @classmethod
    def from_metadata(cls, identity: str, metadata: Optional[Dict[str, Any]]) -> "MfaProfile":
        """
        Build a profile from a provider metadata blob.

        Unparseable device timestamps are dropped: a corrupt entry only
        costs that device its trust, it never fails the login.
        """
        metadata = metadata or {}
        devices: Dict[str, datetime] = {}

        for fingerprint, raw in (metadata.get(TRUSTED_DEVICES_KEY) or {}).items():
            try:
                devices[fingerprint] = ensure_aware(datetime.fromisoformat(raw))
            except (TypeError, ValueError):
                logger.warning(f"Dropping unreadable trust timestamp for {identity}")

        return cls(
            identity=identity,
            secret=metadata.get(SECRET_KEY) or None,
            trusted_devices=devices,
        )

    def to_metadata(self) -> Dict[str, Any]:
        return {
            SECRET_KEY: self.secret,
            TRUSTED_DEVICES_KEY: {
                fingerprint: verified_at.isoformat()
                for fingerprint, verified_at in self.trusted_devices.items()
            },
        }
