import asyncio
import base64
import json
from typing import Optional

import pytest

from nacl.bindings import sodium_increment
from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from kpxc_getpw.association import AssociationStore
from kpxc_getpw.errors import TransportError
from kpxc_getpw.transport import split_json_object


DB_HASH = "29234e32274a32276e25666a42535e5e4e236c3747513a5d6e3a52305034765b"


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("utf-8"))


# -----------------------------------------------------------------------------
# Fake peer application speaking the browser-integration box protocol
# -----------------------------------------------------------------------------

class FakeKeePassXC:
    """
    In-process stand-in for the running application.

    Knobs:
      - locked: get-databasehash answers "database not opened"
      - deny_association: associate answers "action cancelled or denied"
      - drop_on: action name for which the peer disconnects instead of replying
      - tamper_on: action name whose encrypted reply gets a flipped byte
      - bad_nonce_on: action name whose reply carries an unrelated nonce
      - test_associate_error: error code returned by test-associate
      - reply_overrides: action name -> fields forced into its encrypted reply

    Decrypted requests are kept in `received`, in order.
    """
    def __init__(self, *, db_hash: str = DB_HASH, entries: Optional[dict] = None):
        self.db_hash = db_hash
        self.entries = dict(entries or {})
        self.associations: dict = {}
        self.locked = False
        self.deny_association = False
        self.reject_handshake = False
        self.drop_on: Optional[str] = None
        self.tamper_on: Optional[str] = None
        self.bad_nonce_on: Optional[str] = None
        self.test_associate_error: Optional[int] = None
        self.reply_overrides: dict = {}
        self.received: list = []
        self.actions: list = []

        self._private = PrivateKey.generate()
        self._clients: dict = {}

    # --- helpers ---

    @staticmethod
    def error(action: str, code: int, message: str = "error") -> dict:
        # The application sends error codes as strings.
        return {"action": action, "errorCode": str(int(code)), "error": message}

    def handle(self, request: dict) -> Optional[dict]:
        action = request.get("action")
        self.actions.append(action)
        if self.drop_on == action:
            return None

        if action == "change-public-keys":
            if self.reject_handshake:
                return self.error(action, 9, "Key change was not successful")
            self._clients[request["clientID"]] = PublicKey(unb64(request["publicKey"]))
            return {
                "action": action,
                "version": "2.7.9",
                "publicKey": b64(bytes(self._private.public_key)),
                "nonce": b64(sodium_increment(unb64(request["nonce"]))),
                "success": "true",
            }

        client_pub = self._clients.get(request.get("clientID"))
        if client_pub is None:
            return self.error(action, 3, "Client public key not received")

        box = Box(self._private, client_pub)
        nonce = unb64(request["nonce"])
        try:
            inner = json.loads(box.decrypt(unb64(request["message"]), nonce))
        except CryptoError:
            return self.error(action, 4, "Cannot decrypt message")
        self.received.append(inner)
        if inner.get("action") != action:
            return self.error(action, 12, "Incorrect action")

        reply = getattr(self, "_on_" + action.replace("-", "_"))(inner)
        if "errorCode" in reply:
            return reply

        reply_nonce = sodium_increment(nonce)
        if self.bad_nonce_on == action:
            reply_nonce = bytes(24)
        payload = dict(reply)
        payload.update({"nonce": b64(reply_nonce), "success": "true", "version": "2.7.9"})
        payload.update(self.reply_overrides.get(action, {}))
        ct = bytearray(box.encrypt(json.dumps(payload).encode("utf-8"), reply_nonce).ciphertext)
        if self.tamper_on == action:
            ct[-1] ^= 0x01
        return {"action": action, "message": b64(bytes(ct)), "nonce": b64(reply_nonce)}

    # --- actions ---

    def _on_get_databasehash(self, inner: dict) -> dict:
        if self.locked:
            return self.error("get-databasehash", 1, "Database not opened")
        return {"hash": self.db_hash}

    def _on_associate(self, inner: dict) -> dict:
        if self.deny_association:
            return self.error("associate", 6, "Action cancelled or denied")
        client_id = f"kpxc-getpw-{len(self.associations) + 1}"
        self.associations[client_id] = inner["idKey"]
        return {"hash": self.db_hash, "id": client_id}

    def _on_test_associate(self, inner: dict) -> dict:
        if self.test_associate_error is not None:
            return self.error("test-associate", self.test_associate_error)
        if self.associations.get(inner.get("id")) != inner.get("key"):
            return self.error("test-associate", 8, "KeePassXC association failed, try again")
        return {"hash": self.db_hash, "id": inner["id"]}

    def _on_get_logins(self, inner: dict) -> dict:
        keys = inner.get("keys") or []
        if not any(self.associations.get(k.get("id")) == k.get("key") for k in keys):
            return self.error("get-logins", 8, "KeePassXC association failed, try again")
        found = self.entries.get(inner.get("url"), [])
        if not found:
            return self.error("get-logins", 15, "No logins found")
        return {"count": len(found), "entries": found, "hash": self.db_hash}

    # --- transports ---

    def channel(self) -> "LoopbackChannel":
        return LoopbackChannel(self)

    async def serve_unix(self, path: str) -> asyncio.AbstractServer:
        async def on_client(reader, writer):
            buf = b""
            try:
                while True:
                    chunk = await reader.read(65536)
                    if not chunk:
                        break
                    buf += chunk
                    framed = split_json_object(buf)
                    while framed is not None:
                        msg, buf = framed
                        reply = self.handle(json.loads(msg))
                        if reply is None:
                            return
                        writer.write(json.dumps(reply).encode("utf-8"))
                        await writer.drain()
                        framed = split_json_object(buf)
            finally:
                writer.close()

        return await asyncio.start_unix_server(on_client, path=path)


class LoopbackChannel:
    """Channel implementation that hands requests straight to a FakeKeePassXC."""

    def __init__(self, peer: FakeKeePassXC):
        self.peer = peer
        self.closed = False
        self.sent: list = []
        self._pending: list = []

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise TransportError("channel is closed")
        request = json.loads(data)
        self.sent.append(request)
        reply = self.peer.handle(request)
        if reply is not None:
            self._pending.append(json.dumps(reply).encode("utf-8"))

    async def receive(self, timeout=None) -> bytes:
        if self.closed:
            raise TransportError("channel is closed")
        if not self._pending:
            raise TransportError("peer closed the connection")
        return self._pending.pop(0)

    async def close(self) -> None:
        self.closed = True


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def entries() -> dict:
    return {
        "https://example.com": [
            {"login": "alice", "name": "Example", "password": "pw-alice", "uuid": "u1"},
            {"login": "bob", "name": "Example", "password": "pw-bob", "uuid": "u2"},
            {"login": "carol", "name": "Example (old)", "password": "pw-carol", "uuid": "u3",
             "group": "Web", "stringFields": []},
        ],
    }


@pytest.fixture
def peer(entries) -> FakeKeePassXC:
    return FakeKeePassXC(entries=entries)


@pytest.fixture
def make_peer():
    return FakeKeePassXC


@pytest.fixture
def channel(peer) -> LoopbackChannel:
    return peer.channel()


@pytest.fixture
def store_path(tmp_path) -> str:
    return str(tmp_path / "kpxc-getpw" / "associations.json")


@pytest.fixture
def store(store_path) -> AssociationStore:
    s = AssociationStore(store_path)
    s.load()
    return s
