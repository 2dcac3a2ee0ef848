from .box import (
    NONCE_SIZE,
    KEY_SIZE,
    b64_encode,
    b64_decode,
    generate_keypair,
    generate_nonce,
    generate_client_id,
    increment_nonce,
    serialize_public_key,
    load_public_key,
    encrypt,
    decrypt,
    seal_message,
    open_message,
    atomic_write_json,
    is_encrypted_document,
    encrypt_document,
    decrypt_document,
    )
