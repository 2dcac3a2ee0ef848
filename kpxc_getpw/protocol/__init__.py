from .messages import (
    AssociationCheck,
    AssociationRecord,
    AssociateResult,
    CredentialEntry,
    PeerErrorCode,
    )

from .session import (
    KeePassXCSession,
    SessionState,
    ensure_association,
    DEFAULT_ASSOCIATE_TIMEOUT,
    )
