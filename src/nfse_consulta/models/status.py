from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class ChannelStatus:
    configured: bool
    subject: str | None = None
    expires_at: datetime | None = None
    expired: bool = False


@dataclass(frozen=True)
class IntegrationStatus:
    """Point-in-time view of which portal channels are ready to use."""

    nacional: ChannelStatus
    municipal: ChannelStatus
    ambiente: str

    def to_dict(self) -> dict:
        def channel(c: ChannelStatus) -> dict:
            return {
                "configurado": c.configured,
                "titular": c.subject,
                "validade": c.expires_at.isoformat() if c.expires_at else None,
                "expirado": c.expired,
            }

        return {
            "certificadoNacional": channel(self.nacional),
            "certificadoMunicipal": channel(self.municipal),
            "ambiente": self.ambiente,
        }
