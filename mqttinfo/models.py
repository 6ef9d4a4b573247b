"""
Result record and shared data models
"""
from enum import Enum

from pydantic import BaseModel, Field, computed_field, field_validator

# Usernames and passwords are u16 length-prefixed on the wire
MAX_CREDENTIAL_BYTES = 0x10000

UNKNOWN_BROKER = "unknown"


class ProtocolVersion(str, Enum):
    """MQTT protocol versions that can be probed"""

    V3_1_1 = "3.1.1"
    V5_0 = "5.0"

    @property
    def level(self) -> int:
        """Protocol level byte sent in CONNECT"""
        return 0x04 if self is ProtocolVersion.V3_1_1 else 0x05

    @property
    def label(self) -> str:
        return f"MQTT v{self.value}"


class Credentials(BaseModel):
    """Optional username/password pair; an empty username means anonymous"""

    username: str = ""
    password: str = Field(default="", repr=False)

    @field_validator("username", "password")
    @classmethod
    def _fits_length_prefix(cls, value: str) -> str:
        if len(value.encode("utf-8")) >= MAX_CREDENTIAL_BYTES:
            raise ValueError(f"must be shorter than {MAX_CREDENTIAL_BYTES} bytes")
        return value

    @property
    def anonymous(self) -> bool:
        return not self.username


class VersionFindings(BaseModel):
    """
    Findings for one protocol version.

    Every field starts at the conservative "feature absent" value, so a
    phase that aborts partway still leaves a consistent record. filter_sys
    is the exception: brokers are expected to filter client-published
    retained $SYS messages unless shown otherwise.
    """

    supported: bool = False
    anonymous: bool = False
    qos1: bool = False
    qos2: bool = False
    qos3_response: bool = False
    subscribe_all: bool = False
    invalid_topics: bool = False
    invalid_utf8_topic: bool = False
    publish_sys: bool = False
    filter_sys: bool = True


class BrokerInfo(BaseModel):
    """
    Aggregate result of one run against one broker.

    Created once, mutated as probing progresses and serialized at the end.
    """

    host: str
    port: int = Field(default=1883, ge=1, lt=0x10000)
    credentials: Credentials = Field(default_factory=Credentials, exclude=True, repr=False)

    v4: VersionFindings = Field(default_factory=VersionFindings)
    v5: VersionFindings = Field(default_factory=VersionFindings)

    type_guessed: str = UNKNOWN_BROKER

    failed: bool = False
    error: str = ""

    @computed_field
    @property
    def username(self) -> str:
        return self.credentials.username

    @property
    def server(self) -> str:
        return f"{self.host}:{self.port}"

    def findings(self, version: ProtocolVersion) -> VersionFindings:
        """Findings record for the given protocol version"""
        return self.v4 if version is ProtocolVersion.V3_1_1 else self.v5

    def mark_failed(self, error: Exception) -> None:
        self.failed = True
        self.error = getattr(error, "message", None) or str(error)

    def to_json(self) -> str:
        """Single JSON line, password omitted"""
        return self.model_dump_json()
