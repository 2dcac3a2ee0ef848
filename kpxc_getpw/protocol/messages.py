from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ----------------------------
# Actions
# ----------------------------

CHANGE_PUBLIC_KEYS = "change-public-keys"
GET_DATABASE_HASH = "get-databasehash"
ASSOCIATE = "associate"
TEST_ASSOCIATE = "test-associate"
GET_LOGINS = "get-logins"


class PeerErrorCode(IntEnum):
    DATABASE_NOT_OPENED = 1
    DATABASE_HASH_NOT_RECEIVED = 2
    CLIENT_PUBLIC_KEY_NOT_RECEIVED = 3
    CANNOT_DECRYPT_MESSAGE = 4
    TIMEOUT_OR_NOT_CONNECTED = 5
    ACTION_CANCELLED_OR_DENIED = 6
    CANNOT_ENCRYPT_MESSAGE = 7
    ASSOCIATION_FAILED = 8
    KEY_CHANGE_FAILED = 9
    ENCRYPTION_KEY_UNRECOGNIZED = 10
    NO_SAVED_DATABASES_FOUND = 11
    INCORRECT_ACTION = 12
    EMPTY_MESSAGE_RECEIVED = 13
    NO_URL_PROVIDED = 14
    NO_LOGINS_FOUND = 15


class AssociationCheck(str, Enum):
    """Outcome of test-associate. Only VALID skips re-association."""
    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN = "unknown"


# ----------------------------
# Domain records
# ----------------------------

class AssociationRecord(BaseModel):
    """Long-lived client identity registered with one database."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    id_key: str = Field(alias="idKey")

    def to_json(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)


class AssociateResult(BaseModel):
    db_hash: str
    record: AssociationRecord


class CredentialEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    login: str = ""
    password: str = ""
    name: Optional[str] = None
    uuid: Optional[str] = None
    group: Optional[str] = None
    totp: Optional[str] = None


# ----------------------------
# Peer replies
# ----------------------------

class PeerReply(BaseModel):
    """Fields common to every reply. Unknown fields are ignored."""
    model_config = ConfigDict(extra="ignore")

    action: Optional[str] = None
    nonce: Optional[str] = None
    version: Optional[str] = None
    success: Optional[Union[bool, str]] = None

    @property
    def ok(self) -> bool:
        if isinstance(self.success, bool):
            return self.success
        return str(self.success).lower() == "true"


class ErrorReply(PeerReply):
    error: Optional[str] = None
    errorCode: Optional[int] = None


class HandshakeReply(ErrorReply):
    publicKey: Optional[str] = None


class EncryptedReply(PeerReply):
    message: str
    nonce: str


class DatabaseHashReply(PeerReply):
    hash: str


class AssociateReply(PeerReply):
    hash: Optional[str] = None
    id: Optional[str] = None


class AssociationTestReply(PeerReply):
    hash: Optional[str] = None
    id: Optional[str] = None


class GetLoginsReply(PeerReply):
    hash: Optional[str] = None
    count: Optional[int] = None
    entries: List[CredentialEntry] = Field(default_factory=list)


def is_error_reply(reply: dict[str, Any]) -> bool:
    return "errorCode" in reply or ("error" in reply and "message" not in reply)
