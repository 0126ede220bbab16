"""Request and response bodies for the HTTP API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from evogate.core.models import Instance, InstanceSummary, QrCode, SentMessage
from evogate.utils.helpers import iso


class _CamelModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CreateInstanceRequest(_CamelModel):
    instance_name: str | None = Field(default=None, alias="instanceName")


class SendTextRequest(_CamelModel):
    number: str | None = None
    text: str | None = None


class InstanceView(_CamelModel):
    instance_name: str = Field(alias="instanceName")
    status: str
    state: str
    created_at: str | None = Field(default=None, alias="createdAt")
    connected_at: str | None = Field(default=None, alias="connectedAt")
    last_activity_at: str | None = Field(default=None, alias="lastActivityAt")
    has_qr: bool = Field(default=False, alias="hasQr")

    @classmethod
    def from_summary(cls, summary: InstanceSummary) -> InstanceView:
        return cls(
            instance_name=summary.name,
            status=summary.state.value,
            state=summary.state.evolution_state,
            created_at=iso(summary.created_at),
            connected_at=iso(summary.connected_at),
            last_activity_at=iso(summary.last_activity_at),
            has_qr=summary.has_qr,
        )


class ConnectionStateView(_CamelModel):
    instance_name: str = Field(alias="instanceName")
    state: str
    status: str
    connected_at: str | None = Field(default=None, alias="connectedAt")
    last_activity_at: str | None = Field(default=None, alias="lastActivityAt")
    reason: str | None = None

    @classmethod
    def from_instance(cls, instance: Instance) -> ConnectionStateView:
        return cls(
            instance_name=instance.name,
            state=instance.state.evolution_state,
            status=instance.state.value,
            connected_at=iso(instance.connected_at),
            last_activity_at=iso(instance.last_activity_at),
            reason=instance.error_reason or instance.disconnect_reason,
        )


class QrCodeView(_CamelModel):
    instance: str
    qrcode: str | None = None
    code: str
    expires_at: str | None = Field(default=None, alias="expiresAt")

    @classmethod
    def from_qr(cls, qr: QrCode, data_url: str | None) -> QrCodeView:
        return cls(instance=qr.instance, qrcode=data_url, code=qr.token, expires_at=iso(qr.expires_at))


class MessageKey(_CamelModel):
    id: str
    remote_jid: str = Field(alias="remoteJid")
    from_me: bool = Field(default=True, alias="fromMe")


class SendTextResponse(_CamelModel):
    key: MessageKey
    status: str = "PENDING"
    message_timestamp: int = Field(alias="messageTimestamp")

    @classmethod
    def from_message(cls, message: SentMessage) -> SendTextResponse:
        return cls(
            key=MessageKey(id=message.message_id, remote_jid=message.to),
            message_timestamp=int(message.accepted_at.timestamp()),
        )


def dump(model: BaseModel) -> dict:
    """Serialize with the camelCase wire names."""
    return model.model_dump(by_alias=True)
