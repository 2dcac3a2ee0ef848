"""
Session protocol for the KeePassXC browser-integration channel.

Lifecycle of one session (one process invocation):

    DISCONNECTED --handshake--> KEY_EXCHANGED --test_associate(VALID)--> READY
                                              --associate-------------> ASSOCIATED -> READY
    READY --get_logins--> READY
    any state --KpxcError--> FAILED   (terminal; start a new session)

Key material (session key pair, peer public key) lives only on the session
object and is dropped on close. The association record is long-lived and is
owned by the caller's store; the session only reads it and proposes new ones.

Every encrypted exchange uses a fresh nonce and requires the peer to answer
with that nonce incremented, both on the outer envelope and inside the
decrypted payload.
"""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel, ValidationError

from kpxc_getpw.crypto_utils import (
    b64_encode,
    generate_client_id,
    generate_keypair,
    generate_nonce,
    increment_nonce,
    load_public_key,
    open_message,
    seal_message,
    serialize_public_key,
)
from kpxc_getpw.errors import (
    AssociationError,
    HandshakeError,
    KpxcError,
    PeerError,
    ProtocolError,
    SessionFailedError,
    TransportError,
)
from kpxc_getpw.transport import Channel

from .messages import (
    ASSOCIATE,
    CHANGE_PUBLIC_KEYS,
    GET_DATABASE_HASH,
    GET_LOGINS,
    TEST_ASSOCIATE,
    AssociateReply,
    AssociateResult,
    AssociationCheck,
    AssociationRecord,
    AssociationTestReply,
    CredentialEntry,
    DatabaseHashReply,
    EncryptedReply,
    GetLoginsReply,
    HandshakeReply,
    PeerErrorCode,
    is_error_reply,
)

logger = logging.getLogger(__name__)

DEFAULT_ASSOCIATE_TIMEOUT = 120.0

# Clean "we do not know you" answers to test-associate.
_ASSOCIATION_REJECTED = {
    PeerErrorCode.ASSOCIATION_FAILED,
    PeerErrorCode.ENCRYPTION_KEY_UNRECOGNIZED,
}

M = TypeVar("M", bound=BaseModel)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    KEY_EXCHANGED = "key_exchanged"
    ASSOCIATED = "associated"
    READY = "ready"
    FAILED = "failed"


class RecordStore(Protocol):
    def has_key(self, db_hash: str) -> bool: ...
    def get_key(self, db_hash: str) -> AssociationRecord: ...
    def save_key(self, db_hash: str, record: AssociationRecord) -> None: ...


def _parse(model: Type[M], data: dict, what: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"malformed {what} reply: {e.error_count()} invalid field(s)") from e


def _peer_error(reply: dict, action: str) -> PeerError:
    code = reply.get("errorCode")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    return PeerError(str(reply.get("error") or "peer reported an error"), code=code, action=action)


class KeePassXCSession:
    def __init__(
        self,
        channel: Channel,
        *,
        timeout: Optional[float] = None,
        associate_timeout: Optional[float] = DEFAULT_ASSOCIATE_TIMEOUT,
    ):
        self._channel = channel
        self.timeout = timeout
        self.associate_timeout = associate_timeout

        self.state = SessionState.DISCONNECTED
        self.client_id: Optional[str] = None
        self.database_hash: Optional[str] = None
        self.record: Optional[AssociationRecord] = None
        self.peer_version: Optional[str] = None

        self._public_key = None
        self._private_key = None
        self._peer_key = None

    async def __aenter__(self) -> "KeePassXCSession":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # State guards
    # ------------------------------------------------------------------

    def _require(self, action: str, *states: SessionState) -> None:
        if self.state == SessionState.FAILED:
            raise SessionFailedError(f"session has failed; cannot run {action}")
        if self.state not in states:
            raise ProtocolError(f"{action} is not allowed in state {self.state.value}")

    @contextmanager
    def _step(self, action: str) -> Iterator[None]:
        try:
            yield
        except KpxcError as e:
            self.state = SessionState.FAILED
            logger.debug("%s failed (%s): %s", action, type(e).__name__, e)
            raise

    # ------------------------------------------------------------------
    # Wire
    # ------------------------------------------------------------------

    async def _round_trip(self, request: dict, action: str, timeout: Optional[float] = None) -> dict:
        await self._channel.send(json.dumps(request).encode("utf-8"))
        raw = await self._channel.receive(timeout if timeout is not None else self.timeout)
        try:
            reply = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ProtocolError(f"{action}: reply is not valid JSON") from e
        if not isinstance(reply, dict):
            raise ProtocolError(f"{action}: reply is not a JSON object")
        if reply.get("action") not in (None, action):
            raise ProtocolError(f"{action}: reply is for action {reply.get('action')!r}")
        return reply

    async def _encrypted_exchange(self, action: str, payload: dict, timeout: Optional[float] = None) -> dict:
        nonce = generate_nonce()
        expected = increment_nonce(nonce)
        expected_b64 = b64_encode(expected)

        inner = {"action": action}
        inner.update(payload)
        request = {
            "action": action,
            "message": seal_message(inner, nonce, self._peer_key, self._private_key),
            "nonce": b64_encode(nonce),
            "clientID": self.client_id,
        }
        logger.debug("-> %s", action)
        reply = await self._round_trip(request, action, timeout)

        if is_error_reply(reply):
            raise _peer_error(reply, action)
        envelope = _parse(EncryptedReply, reply, action)
        if envelope.nonce != expected_b64:
            raise ProtocolError(f"{action}: reply nonce does not answer the request")

        message = open_message(envelope.message, expected, self._peer_key, self._private_key)
        if message.get("nonce") != expected_b64:
            raise ProtocolError(f"{action}: encrypted reply nonce does not answer the request")
        logger.debug("<- %s", action)
        return message

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def handshake(self) -> None:
        """Exchange public keys. DISCONNECTED -> KEY_EXCHANGED."""
        self._require(CHANGE_PUBLIC_KEYS, SessionState.DISCONNECTED)
        with self._step(CHANGE_PUBLIC_KEYS):
            self._public_key, self._private_key = generate_keypair()
            self.client_id = generate_client_id()
            nonce = generate_nonce()
            request = {
                "action": CHANGE_PUBLIC_KEYS,
                "publicKey": serialize_public_key(self._public_key),
                "nonce": b64_encode(nonce),
                "clientID": self.client_id,
            }
            try:
                raw = await self._round_trip(request, CHANGE_PUBLIC_KEYS)
                reply = _parse(HandshakeReply, raw, CHANGE_PUBLIC_KEYS)
            except (TransportError, ProtocolError) as e:
                raise HandshakeError(f"key exchange failed: {e}") from e

            if reply.errorCode is not None or not reply.ok:
                raise HandshakeError(f"key exchange rejected: {reply.error or 'no reason given'}")
            if reply.nonce != b64_encode(increment_nonce(nonce)):
                raise HandshakeError("key exchange reply nonce does not answer the request")
            if not reply.publicKey:
                raise HandshakeError("key exchange reply carries no public key")

            self._peer_key = load_public_key(reply.publicKey)
            self.peer_version = reply.version
            self.state = SessionState.KEY_EXCHANGED
            logger.info("key exchange complete (peer version %s)", self.peer_version or "unknown")

    async def _fetch_database_hash(self, trigger_unlock: bool = False) -> str:
        payload = {"triggerUnlock": "true"} if trigger_unlock else {}
        message = await self._encrypted_exchange(GET_DATABASE_HASH, payload)
        reply = _parse(DatabaseHashReply, message, GET_DATABASE_HASH)
        self.database_hash = reply.hash
        logger.info("peer database hash %s", reply.hash)
        return reply.hash

    async def get_database_hash(self, trigger_unlock: bool = False) -> str:
        """
        Ask for the DatabaseIdentity of the database the peer is serving.
        A locked database surfaces as PeerError(DATABASE_NOT_OPENED).
        """
        self._require(GET_DATABASE_HASH, SessionState.KEY_EXCHANGED, SessionState.ASSOCIATED, SessionState.READY)
        with self._step(GET_DATABASE_HASH):
            return await self._fetch_database_hash(trigger_unlock)

    async def test_associate(self, record: AssociationRecord) -> AssociationCheck:
        """
        Validate a stored identity.

        A rejection by the peer is a result, not an error: INVALID for a clean
        "unknown identity" answer, UNKNOWN for any other peer error code. In
        both cases the session stays usable for associate(). Transport and
        cryptographic failures still raise.
        """
        self._require(TEST_ASSOCIATE, SessionState.KEY_EXCHANGED, SessionState.READY)
        with self._step(TEST_ASSOCIATE):
            try:
                message = await self._encrypted_exchange(TEST_ASSOCIATE, {"id": record.id, "key": record.id_key})
            except PeerError as e:
                if e.code in _ASSOCIATION_REJECTED:
                    logger.info("stored association %r rejected by peer (code %s)", record.id, e.code)
                    return AssociationCheck.INVALID
                logger.warning(
                    "test-associate for %r failed with peer error code %s (%s); re-association required",
                    record.id, e.code, e,
                )
                return AssociationCheck.UNKNOWN

            reply = _parse(AssociationTestReply, message, TEST_ASSOCIATE)
            if not reply.ok or (reply.id is not None and reply.id != record.id):
                logger.info("stored association %r not confirmed by peer", record.id)
                return AssociationCheck.INVALID

            if reply.hash:
                self.database_hash = reply.hash
            self.record = record
            self.state = SessionState.READY
            logger.info("stored association %r confirmed", record.id)
            return AssociationCheck.VALID

    async def associate(self) -> AssociateResult:
        """
        Register a new identity with the peer. The peer asks its user to
        approve, hence the longer associate_timeout.

        The caller is responsible for persisting the returned record.
        """
        self._require(ASSOCIATE, SessionState.KEY_EXCHANGED, SessionState.READY)
        with self._step(ASSOCIATE):
            db_hash = self.database_hash or await self._fetch_database_hash()

            # Only the public half of the identity pair is ever used by the protocol.
            id_public, _ = generate_keypair()
            id_key = serialize_public_key(id_public)
            payload = {"key": serialize_public_key(self._public_key), "idKey": id_key}
            try:
                message = await self._encrypted_exchange(ASSOCIATE, payload, timeout=self.associate_timeout)
            except PeerError as e:
                raise AssociationError(f"association rejected: {e}") from e

            reply = _parse(AssociateReply, message, ASSOCIATE)
            if not reply.ok or not reply.id:
                raise AssociationError("association rejected: peer issued no identity")
            if reply.hash and reply.hash != db_hash:
                logger.debug("associate reply names database %s instead of %s", reply.hash, db_hash)
                db_hash = reply.hash
                self.database_hash = db_hash

            record = AssociationRecord(id=reply.id, id_key=id_key)
            self.state = SessionState.ASSOCIATED
            logger.info("associated with database %s as %r", db_hash, record.id)

            self.record = record
            self.state = SessionState.READY
            return AssociateResult(db_hash=db_hash, record=record)

    async def get_logins(self, url: str, submit_url: Optional[str] = None) -> list[CredentialEntry]:
        """
        Fetch entries matching url, in the peer's order (index 0 is the peer's
        best match). No match is an empty list.
        """
        self._require(GET_LOGINS, SessionState.READY)
        with self._step(GET_LOGINS):
            payload: dict[str, Any] = {
                "url": url,
                "keys": [{"id": self.record.id, "key": self.record.id_key}],
            }
            if submit_url:
                payload["submitUrl"] = submit_url
            try:
                message = await self._encrypted_exchange(GET_LOGINS, payload)
            except PeerError as e:
                if e.code == PeerErrorCode.NO_LOGINS_FOUND:
                    logger.info("no logins found for %s", url)
                    return []
                raise

            reply = _parse(GetLoginsReply, message, GET_LOGINS)
            logger.info("%d login(s) found for %s", len(reply.entries), url)
            return list(reply.entries)

    async def close(self) -> None:
        try:
            await self._channel.close()
        finally:
            self._public_key = None
            self._private_key = None
            self._peer_key = None
            if self.state != SessionState.FAILED:
                self.state = SessionState.DISCONNECTED


async def ensure_association(session: KeePassXCSession, store: RecordStore) -> AssociationRecord:
    """
    Bring a key-exchanged session to READY.

    Reuse the stored identity for the current database when the peer still
    accepts it; otherwise associate again and upsert the new record into the
    store (in memory only, the caller saves).
    """
    db_hash = await session.get_database_hash()

    if store.has_key(db_hash):
        check = await session.test_associate(store.get_key(db_hash))
        if check == AssociationCheck.VALID:
            return session.record
        logger.info("re-associating with database %s (stored identity %s)", db_hash, check.value)
    else:
        logger.info("no stored identity for database %s; associating", db_hash)

    result = await session.associate()
    store.save_key(result.db_hash, result.record)
    return result.record
