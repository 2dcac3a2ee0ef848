"""
Association store: database hash -> {id, idKey}.

The file is read once by load() and written once by save(). Mutations stay in
memory until save() is called. Concurrent invocations are not coordinated;
the last writer wins.

On disk (plain):

    {"<db hash>": {"id": "<client name>", "idKey": "<base64>"}}

With a passphrase the same object is wrapped in an scrypt + AES-GCM document
(see crypto_utils.encrypt_document).
"""
from __future__ import annotations

import json
import logging
import os
from types import MappingProxyType
from typing import Mapping, Optional, Union

from pydantic import ValidationError

from kpxc_getpw.crypto_utils import (
    atomic_write_json,
    decrypt_document,
    encrypt_document,
    is_encrypted_document,
)
from kpxc_getpw.errors import ConfigLoadError, ConfigSaveError, KpxcError
from kpxc_getpw.protocol.messages import AssociationRecord

logger = logging.getLogger(__name__)


class AssociationStore:
    def __init__(self, path: str, passphrase: Optional[Union[str, bytes]] = None):
        self.path = path
        if isinstance(passphrase, str):
            passphrase = passphrase.encode("utf-8")
        self._passphrase = passphrase or None
        self._records: dict[str, AssociationRecord] = {}
        self._dirty = False

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def records(self) -> Mapping[str, AssociationRecord]:
        return MappingProxyType(self._records)

    def load(self) -> dict[str, AssociationRecord]:
        """
        Read the persisted mapping, replacing the in-memory one.
        A missing file is an empty store; anything unreadable is ConfigLoadError.
        """
        if not os.path.exists(self.path):
            logger.debug("association store %s does not exist yet", self.path)
            self._records = {}
            self._dirty = False
            return dict(self._records)

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ConfigLoadError(f"cannot read association store {self.path}: {e}") from e

        if is_encrypted_document(doc):
            try:
                doc = decrypt_document(doc, self._passphrase)
            except (KpxcError, ValueError, KeyError, TypeError) as e:
                raise ConfigLoadError(f"cannot decrypt association store {self.path}: {e}") from e

        if not isinstance(doc, dict):
            raise ConfigLoadError(f"association store {self.path} is not a JSON object")

        records: dict[str, AssociationRecord] = {}
        for db_hash, raw in doc.items():
            try:
                records[str(db_hash)] = AssociationRecord.model_validate(raw)
            except ValidationError as e:
                raise ConfigLoadError(f"invalid association record for database {db_hash}") from e

        self._records = records
        self._dirty = False
        logger.debug("loaded %d association(s) from %s", len(records), self.path)
        return dict(records)

    def has_key(self, db_hash: str) -> bool:
        return db_hash in self._records

    def get_key(self, db_hash: str) -> AssociationRecord:
        return self._records[db_hash]

    def save_key(self, db_hash: str, record: AssociationRecord) -> None:
        if self._records.get(db_hash) == record:
            return
        self._records[db_hash] = record
        self._dirty = True

    def save(self) -> None:
        doc: dict = {h: r.to_json() for h, r in self._records.items()}
        if self._passphrase:
            doc = encrypt_document(doc, self._passphrase)
        try:
            atomic_write_json(self.path, doc, mode=0o600)
        except OSError as e:
            raise ConfigSaveError(f"cannot write association store {self.path}: {e}") from e
        self._dirty = False
        logger.debug("saved %d association(s) to %s", len(self._records), self.path)
