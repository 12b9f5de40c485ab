"""Pydantic models for device identity and peer discovery."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class DeviceType(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"
    WEB = "web"
    HEADLESS = "headless"
    SERVER = "server"


class ProtocolType(str, Enum):
    HTTP = "http"
    HTTPS = "https"


class WireModel(BaseModel):
    """Base for JSON payloads exchanged with peers (camelCase on the wire)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class InfoDto(WireModel):
    """Response body of the device-info query."""
    alias: str
    version: str | None = None
    device_model: str | None = None
    device_type: DeviceType | None = None
    fingerprint: str | None = None
    download: bool | None = None


class RegisterDto(WireModel):
    """Register handshake payload, also the `info` part of prepare-upload."""
    alias: str
    version: str | None = None
    device_model: str | None = None
    device_type: DeviceType | None = None
    fingerprint: str | None = None
    port: int | None = None
    protocol: ProtocolType | None = None
    download: bool | None = None


class MulticastDto(WireModel):
    """The JSON payload sent to the multicast group."""
    alias: str
    version: str | None = None
    device_model: str | None = None
    device_type: DeviceType | None = None
    fingerprint: str
    port: int | None = None
    protocol: ProtocolType | None = None
    download: bool | None = None
    announcement: bool | None = None  # protocol v1
    announce: bool | None = None  # protocol v2

    @property
    def is_announcing(self) -> bool:
        return bool(self.announcement or self.announce)


class DeviceIdentity(BaseModel):
    """This process's identity. Built once at startup."""
    model_config = ConfigDict(frozen=True)

    alias: str
    version: str
    device_model: str
    device_type: DeviceType = DeviceType.HEADLESS
    fingerprint: str
    port: int
    protocol: ProtocolType = ProtocolType.HTTP
    download: bool = False

    def to_info(self) -> InfoDto:
        return InfoDto(
            alias=self.alias,
            version=self.version,
            device_model=self.device_model,
            device_type=self.device_type,
            fingerprint=self.fingerprint,
            download=self.download,
        )

    def to_register(self) -> RegisterDto:
        return RegisterDto(
            alias=self.alias,
            version=self.version,
            device_model=self.device_model,
            device_type=self.device_type,
            fingerprint=self.fingerprint,
            port=self.port,
            protocol=self.protocol,
            download=self.download,
        )

    def to_multicast(self, announce: bool = True) -> MulticastDto:
        return MulticastDto(
            alias=self.alias,
            version=self.version,
            device_model=self.device_model,
            device_type=self.device_type,
            fingerprint=self.fingerprint,
            port=self.port,
            protocol=self.protocol,
            download=self.download,
            announcement=announce,
            announce=announce,
        )


class Peer(BaseModel):
    """Represents a discovered device on the LAN."""
    fingerprint: str
    alias: str
    ip_address: str
    port: int
    protocol: ProtocolType = ProtocolType.HTTP
    device_model: str | None = None
    device_type: DeviceType | None = None
    version: str | None = None
    last_seen: float  # Unix timestamp
